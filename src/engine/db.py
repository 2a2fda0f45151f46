# src/engine/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from engine.config import settings
from engine.models import Base


def make_engine(database_url: str):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind, expire_on_commit=False)


def init_db(bind):
    # Create tables if they don't exist
    Base.metadata.create_all(bind=bind)


engine = make_engine(settings.database_url)
SessionLocal = make_session_factory(engine)
