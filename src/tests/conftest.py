import pytest

from engine.config import Settings
from engine.db import init_db, make_engine, make_session_factory
from engine.handlers import default_handlers
from engine.job_store import JobStore
from engine.models import Asset
from engine.orchestrator import Orchestrator
from engine.runtime import InMemoryJobRuntimeRegistry
from engine.targets import SqlAssetStore, TargetResolver
from helpers import GatedHandler


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        scan_results_dir=str(tmp_path / "scans"),
        reports_dir=str(tmp_path / "reports"),
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def asset_store(session_factory):
    return SqlAssetStore(session_factory)


@pytest.fixture
def add_asset(session_factory):
    def _add(asset_id, name, ip_address=None, hostname=None, **fields):
        db = session_factory()
        try:
            db.add(Asset(id=asset_id, name=name, ip_address=ip_address, hostname=hostname, **fields))
            db.commit()
        finally:
            db.close()
        return asset_id
    return _add


@pytest.fixture
def make_orchestrator(store, asset_store, settings):
    created = []

    def _make(handlers=None, max_concurrent=3, registry=None):
        registry = registry or InMemoryJobRuntimeRegistry()
        handlers = handlers or default_handlers(store, asset_store)
        orchestrator = Orchestrator(
            store=store,
            registry=registry,
            resolver=TargetResolver(asset_store),
            handlers=handlers,
            max_concurrent=max_concurrent,
            settings=settings,
        )
        created.append((orchestrator, handlers))
        return orchestrator

    yield _make
    for orchestrator, handlers in created:
        for handler_list in handlers.handlers.values():
            for handler in handler_list:
                if isinstance(handler, GatedHandler):
                    handler.release_all()
        orchestrator.shutdown(wait=True)
