# src/engine/job_store.py
"""
JobStore: durable job records backed by SQLAlchemy.

The store is the single source of truth for job status. All access goes
through one lock so that writes for a job id are serialized and readers
always see a fully committed record.
"""
import json
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from engine.errors import InvalidState, JobNotFound
from engine.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    Job,
    JobKind,
    JobStatus,
    ScheduledJob,
    SystemSetting,
    utcnow,
)
from engine.schedules import cron_pattern

CANCELLED_BY_USER = "Cancelled by user"


def _loads(value):
    if value is None:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def _iso(value: Optional[datetime]):
    return value.isoformat() if value else None


def job_to_dict(job: Job, include_findings: bool = False) -> Dict[str, Any]:
    data = {
        "job_id": job.id,
        "kind": job.kind,
        "subtype": job.subtype,
        "status": job.status,
        "configuration": _loads(job.configuration),
        "created_by": job.created_by,
        "created_at": _iso(job.created_at),
        "started_at": _iso(job.started_at),
        "completed_at": _iso(job.completed_at),
        "duration": job.duration,
        "targets_total": job.targets_total,
        "targets_processed": job.targets_processed or 0,
        "result_summary": _loads(job.result_summary),
        "result_file": job.result_file,
        "cancel_requested": bool(job.cancel_requested),
        "error": job.error,
    }
    if include_findings:
        data["findings"] = _loads(job.findings) or []
    return data


def schedule_to_dict(schedule: ScheduledJob) -> Dict[str, Any]:
    return {
        "schedule_id": schedule.id,
        "name": schedule.name,
        "kind": schedule.kind,
        "subtype": schedule.subtype,
        "configuration": _loads(schedule.configuration),
        "frequency": schedule.frequency,
        "time": schedule.time,
        "day_of_week": schedule.day_of_week,
        "day_of_month": schedule.day_of_month,
        "cron": cron_pattern(schedule.frequency, schedule.time, schedule.day_of_week, schedule.day_of_month),
        "enabled": bool(schedule.enabled),
        "next_run": _iso(schedule.next_run),
        "last_run": _iso(schedule.last_run),
        "last_job_id": schedule.last_job_id,
        "created_by": schedule.created_by,
        "created_at": _iso(schedule.created_at),
    }


class JobStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.lock = threading.RLock()

    def _load(self, db, job_id) -> Job:
        job = db.query(Job).filter(Job.id == job_id).first()
        if job is None:
            raise JobNotFound(job_id)
        return job

    def create(self, kind: str, subtype: str, configuration: dict, created_by: str = None) -> Dict[str, Any]:
        job_id = str(uuid.uuid4())
        with self.lock:
            db = self.session_factory()
            try:
                job = Job(
                    id=job_id,
                    kind=kind,
                    subtype=subtype,
                    status=JobStatus.PENDING.value,
                    configuration=json.dumps(configuration),
                    created_by=created_by,
                    created_at=utcnow(),
                    targets_processed=0,
                    cancel_requested=False,
                )
                db.add(job)
                db.commit()
                return job_to_dict(job)
            finally:
                db.close()

    def get(self, job_id: str, include_findings: bool = False) -> Dict[str, Any]:
        with self.lock:
            db = self.session_factory()
            try:
                return job_to_dict(self._load(db, job_id), include_findings=include_findings)
            finally:
                db.close()

    def count_active(self) -> int:
        with self.lock:
            db = self.session_factory()
            try:
                return db.query(Job).filter(Job.status.in_(ACTIVE_STATUSES)).count()
            finally:
                db.close()

    def mark_running(self, job_id: str) -> Dict[str, Any]:
        with self.lock:
            db = self.session_factory()
            try:
                job = self._load(db, job_id)
                if JobStatus.RUNNING.value not in TRANSITIONS.get(job.status, ()):
                    raise InvalidState(job_id, job.status, "start")
                job.status = JobStatus.RUNNING.value
                job.started_at = utcnow()
                db.commit()
                return job_to_dict(job)
            finally:
                db.close()

    def set_targets_total(self, job_id: str, targets_total: int):
        with self.lock:
            db = self.session_factory()
            try:
                job = self._load(db, job_id)
                job.targets_total = targets_total
                db.commit()
            finally:
                db.close()

    def request_cancel(self, job_id: str) -> str:
        """
        Record a cancellation request. A PENDING job is cancelled outright; a
        RUNNING job only gets the marker and is finalized by its runner.
        Returns the status the job had when the request was applied.
        """
        with self.lock:
            db = self.session_factory()
            try:
                job = self._load(db, job_id)
                previous = job.status
                if previous == JobStatus.PENDING.value:
                    now = utcnow()
                    job.status = JobStatus.CANCELLED.value
                    job.completed_at = now
                    job.duration = 0
                    job.error = CANCELLED_BY_USER
                    job.cancel_requested = True
                elif previous == JobStatus.RUNNING.value:
                    job.cancel_requested = True
                    job.error = CANCELLED_BY_USER
                else:
                    raise InvalidState(job_id, previous, "be cancelled")
                db.commit()
                return previous
            finally:
                db.close()

    def finish(self, job_id: str, status: str, error: str = None, result_summary: dict = None,
               findings: list = None, result_file: str = None, targets_processed: int = None) -> Dict[str, Any]:
        """
        Move a job to a terminal state. A COMPLETED write on a job that
        received a cancel request while running is recorded as CANCELLED.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        with self.lock:
            db = self.session_factory()
            try:
                job = self._load(db, job_id)
                if status not in TRANSITIONS.get(job.status, ()):
                    raise InvalidState(job_id, job.status, f"move to {status.lower()}")
                if status == JobStatus.COMPLETED.value and job.cancel_requested:
                    status = JobStatus.CANCELLED.value
                    error = cancelled_message(job.kind)
                now = utcnow()
                job.status = status
                job.completed_at = now
                job.duration = int((now - job.started_at).total_seconds()) if job.started_at else 0
                if targets_processed is not None:
                    job.targets_processed = targets_processed
                if status == JobStatus.COMPLETED.value:
                    job.error = None
                    job.result_summary = json.dumps(result_summary or {})
                    job.findings = json.dumps(findings or [])
                    job.result_file = result_file
                else:
                    job.error = error or job.error or status.lower()
                    job.result_summary = None
                    job.findings = None
                    job.result_file = None
                db.commit()
                return job_to_dict(job)
            finally:
                db.close()

    def list(self, kind=None, subtype=None, status=None, start_date=None, end_date=None,
             created_by=None, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        with self.lock:
            db = self.session_factory()
            try:
                query = db.query(Job)
                if kind:
                    query = query.filter(Job.kind == kind.upper())
                if subtype:
                    query = query.filter(Job.subtype == subtype.upper())
                if status:
                    query = query.filter(Job.status == status.upper())
                if start_date:
                    query = query.filter(Job.created_at >= start_date)
                if end_date:
                    query = query.filter(Job.created_at <= end_date)
                if created_by:
                    query = query.filter(Job.created_by == created_by)
                jobs = query.order_by(Job.created_at.desc(), Job.id).offset(offset).limit(limit).all()
                return [job_to_dict(job) for job in jobs]
            finally:
                db.close()

    def delete(self, job_id: str) -> Dict[str, Any]:
        with self.lock:
            db = self.session_factory()
            try:
                job = self._load(db, job_id)
                if job.status not in TERMINAL_STATUSES:
                    raise InvalidState(job_id, job.status, "be deleted")
                data = job_to_dict(job)
                db.delete(job)
                db.commit()
                return data
            finally:
                db.close()

    def stats(self, since: datetime = None) -> Dict[str, Any]:
        with self.lock:
            db = self.session_factory()
            try:
                query = db.query(Job)
                if since:
                    query = query.filter(Job.created_at >= since)
                jobs = query.all()
            finally:
                db.close()

        status_stats = {}
        kind_stats = {}
        durations = []
        total_findings = 0
        critical_findings = 0
        for job in jobs:
            status_stats[job.status.lower()] = status_stats.get(job.status.lower(), 0) + 1
            kind_stats[job.kind.lower()] = kind_stats.get(job.kind.lower(), 0) + 1
            if job.status == JobStatus.COMPLETED.value:
                if job.duration is not None:
                    durations.append(job.duration)
                summary = _loads(job.result_summary) or {}
                total_findings += summary.get("total_findings", 0)
                critical_findings += summary.get("severity_counts", {}).get("critical", 0)

        total = len(jobs)
        completed = status_stats.get("completed", 0)
        return {
            "total_jobs": total,
            "completed_jobs": completed,
            "failed_jobs": status_stats.get("failed", 0),
            "cancelled_jobs": status_stats.get("cancelled", 0),
            "success_rate": round(completed / total * 100) if total else 0,
            "avg_duration": round(sum(durations) / len(durations)) if durations else 0,
            "total_findings": total_findings,
            "critical_findings": critical_findings,
            "status_stats": status_stats,
            "kind_stats": kind_stats,
        }

    def fail_orphaned(self, reason: str) -> List[str]:
        """Fail PENDING/RUNNING records no runner in this process owns."""
        with self.lock:
            db = self.session_factory()
            try:
                jobs = db.query(Job).filter(Job.status.in_(ACTIVE_STATUSES)).all()
                now = utcnow()
                for job in jobs:
                    job.status = JobStatus.FAILED.value
                    job.completed_at = now
                    job.duration = int((now - job.started_at).total_seconds()) if job.started_at else 0
                    job.error = reason
                db.commit()
                orphaned = [job.id for job in jobs]
            finally:
                db.close()
        for job_id in orphaned:
            logging.warning(f"[job_id={job_id}] Marked orphaned job as failed: {reason}")
        return orphaned

    def latest_findings(self, target_value: str) -> List[Dict[str, Any]]:
        """Findings for a target from the newest completed scan that covered it."""
        with self.lock:
            db = self.session_factory()
            try:
                scans = (
                    db.query(Job)
                    .filter(Job.kind == JobKind.SCAN.value, Job.status == JobStatus.COMPLETED.value)
                    .order_by(Job.completed_at.desc())
                    .all()
                )
                for scan in scans:
                    findings = _loads(scan.findings) or []
                    matched = [f for f in findings if f.get("target") == target_value]
                    if matched:
                        return matched
                return []
            finally:
                db.close()

    def create_schedule(self, kind: str, subtype: str, configuration: dict, frequency: str, time: str,
                        day_of_week: int = None, day_of_month: int = None, enabled: bool = True,
                        next_run: datetime = None, name: str = None, created_by: str = None) -> Dict[str, Any]:
        schedule_id = str(uuid.uuid4())
        with self.lock:
            db = self.session_factory()
            try:
                schedule = ScheduledJob(
                    id=schedule_id,
                    name=name,
                    kind=kind,
                    subtype=subtype,
                    configuration=json.dumps(configuration),
                    frequency=frequency,
                    time=time,
                    day_of_week=day_of_week,
                    day_of_month=day_of_month,
                    enabled=enabled,
                    next_run=next_run,
                    created_by=created_by,
                    created_at=utcnow(),
                )
                db.add(schedule)
                db.commit()
                return schedule_to_dict(schedule)
            finally:
                db.close()

    def list_schedules(self, kind=None, enabled=None) -> List[Dict[str, Any]]:
        with self.lock:
            db = self.session_factory()
            try:
                query = db.query(ScheduledJob)
                if kind:
                    query = query.filter(ScheduledJob.kind == kind.upper())
                if enabled is not None:
                    query = query.filter(ScheduledJob.enabled == enabled)
                schedules = query.order_by(ScheduledJob.created_at.desc(), ScheduledJob.id).all()
                return [schedule_to_dict(schedule) for schedule in schedules]
            finally:
                db.close()

    def due_schedules(self, now: datetime) -> List[Dict[str, Any]]:
        with self.lock:
            db = self.session_factory()
            try:
                schedules = (
                    db.query(ScheduledJob)
                    .filter(ScheduledJob.enabled.is_(True), ScheduledJob.next_run <= now)
                    .order_by(ScheduledJob.next_run)
                    .all()
                )
                return [schedule_to_dict(schedule) for schedule in schedules]
            finally:
                db.close()

    def mark_schedule_run(self, schedule_id: str, ran_at: datetime, next_run: datetime,
                          job_id: str = None) -> Dict[str, Any]:
        with self.lock:
            db = self.session_factory()
            try:
                schedule = db.query(ScheduledJob).filter(ScheduledJob.id == schedule_id).first()
                if schedule is None:
                    raise JobNotFound(schedule_id)
                schedule.last_run = ran_at
                schedule.next_run = next_run
                if job_id:
                    schedule.last_job_id = job_id
                db.commit()
                return schedule_to_dict(schedule)
            finally:
                db.close()

    def get_system_setting(self, key: str, default=None):
        db = self.session_factory()
        try:
            setting = db.query(SystemSetting).filter(SystemSetting.key == key).first()
            return json.loads(setting.value) if setting else default
        except Exception as e:
            logging.warning(f"Failed to get system setting {key}: {e}")
            return default
        finally:
            db.close()


def cancelled_message(kind: str) -> str:
    return "Report was cancelled" if kind == JobKind.REPORT.value else "Scan was cancelled"
