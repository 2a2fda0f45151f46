# src/engine/models.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobKind(str, enum.Enum):
    SCAN = "SCAN"
    REPORT = "REPORT"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


SUBTYPES = {
    JobKind.SCAN: ("NETWORK", "VULNERABILITY", "COMPLIANCE", "FULL"),
    JobKind.REPORT: ("ASSETS", "VULNERABILITIES", "RISKS", "COMPLIANCE"),
}

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value)

# status -> statuses it may move to; terminal states are absorbing
TRANSITIONS = {
    JobStatus.PENDING.value: {JobStatus.RUNNING.value, JobStatus.CANCELLED.value, JobStatus.FAILED.value},
    JobStatus.RUNNING.value: set(TERMINAL_STATUSES),
}


class Job(Base):
    __tablename__ = 'jobs'
    id = Column(String(36), primary_key=True)
    kind = Column(String(16), nullable=False, index=True)
    subtype = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value, index=True)
    configuration = Column(Text, nullable=False)  # JSON string, immutable
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=True)  # whole seconds
    targets_total = Column(Integer, nullable=True)
    targets_processed = Column(Integer, nullable=False, default=0)
    result_summary = Column(Text, nullable=True)  # JSON string
    findings = Column(Text, nullable=True)  # JSON string
    result_file = Column(String, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)


class Asset(Base):
    """Read-only projection of the asset inventory owned by the CRUD service."""
    __tablename__ = 'assets'
    id = Column(String(36), primary_key=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=True)
    criticality = Column(String, nullable=True, default="MEDIUM")
    ip_address = Column(String, nullable=True)
    hostname = Column(String, nullable=True)
    operating_system = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class SystemSetting(Base):
    __tablename__ = 'system_settings'
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)  # JSON string


class ScheduledJob(Base):
    """Recurring scan or report definition; each firing submits a normal job."""
    __tablename__ = 'scheduled_jobs'
    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=True)
    kind = Column(String(16), nullable=False, index=True)
    subtype = Column(String(32), nullable=False)
    configuration = Column(Text, nullable=False)  # JSON string
    frequency = Column(String(16), nullable=False)  # daily | weekly | monthly
    time = Column(String(5), nullable=False)  # HH:MM, UTC
    day_of_week = Column(Integer, nullable=True)  # 0 = Sunday
    day_of_month = Column(Integer, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    next_run = Column(DateTime, nullable=True, index=True)
    last_run = Column(DateTime, nullable=True)
    last_job_id = Column(String(36), nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
