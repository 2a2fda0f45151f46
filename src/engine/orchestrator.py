# src/engine/orchestrator.py
"""
Orchestrator: admission control and dispatch for scan and report jobs.

Jobs run on a thread pool sized to the concurrency ceiling, so the number of
admitted PENDING/RUNNING jobs and the number of jobs able to execute at once
are the same. Submission never waits for the job itself.
"""
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from datetime import timedelta
from typing import Any, Dict, List

from pydantic import ValidationError

from engine.config import Settings
from engine.errors import AdmissionError, CapacityExceeded, InvalidConfiguration, InvalidState
from engine.handlers import HandlerRegistry, default_handlers
from engine.job_store import JobStore
from engine.models import SUBTYPES, JobKind, JobStatus, utcnow
from engine.runner import JobRunner
from engine.runtime import JobRuntimeRegistry, build_registry
from engine.schedules import DEFAULT_TIMES, next_run
from engine.schemas import JobConfiguration, ScheduleDefinition
from engine.targets import SqlAssetStore, TargetResolver

CONCURRENCY_SETTING = "scanning.concurrentScans"
ORPHANED_ERROR = "Interrupted by service restart"

TIMEFRAMES = {
    "24h": timedelta(days=1),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}


def _error_details(error: ValidationError, root: str) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or root}: {err['msg']}" for err in error.errors()
    )


def validate_job(kind: str, subtype: str, configuration: dict):
    """Normalize kind/subtype and validate the configuration payload."""
    try:
        job_kind = JobKind((kind or "").upper())
    except ValueError:
        raise InvalidConfiguration(f"Unsupported job kind: {kind}")
    subtype = (subtype or "").upper()
    if subtype not in SUBTYPES[job_kind]:
        raise InvalidConfiguration(f"Unsupported {job_kind.value.lower()} type: {subtype.lower()}")
    try:
        config = JobConfiguration.model_validate(configuration or {})
    except ValidationError as e:
        raise InvalidConfiguration(f"Invalid configuration: {_error_details(e, 'configuration')}")
    return job_kind.value, subtype, config.model_dump()


def progress_for(job: Dict[str, Any], registry: JobRuntimeRegistry) -> int:
    status = job["status"]
    if status == JobStatus.RUNNING.value:
        return registry.get_progress(job["job_id"])
    if status == JobStatus.COMPLETED.value:
        return 100
    total = job.get("targets_total")
    if status in (JobStatus.FAILED.value, JobStatus.CANCELLED.value) and total:
        return job["targets_processed"] * 100 // total
    return 0


class Orchestrator:
    def __init__(self, store: JobStore, registry: JobRuntimeRegistry, resolver: TargetResolver,
                 handlers: HandlerRegistry, max_concurrent: int = 3, settings: Settings = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.registry = registry
        self.resolver = resolver
        self.max_concurrent = max_concurrent
        self.settings = settings or Settings()
        self.runner = JobRunner(store, registry, resolver, handlers, self.settings)
        self.executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="job-runner")
        self.futures = {}
        self.admission_lock = threading.Lock()
        self.lock = threading.Lock()
        self.scheduler = None
        self.scheduler_stop = threading.Event()

    def submit(self, kind: str, subtype: str, configuration: dict, submitted_by: str = None) -> str:
        kind, subtype, config = validate_job(kind, subtype, configuration)
        # EmptyTargetSet must surface before any record exists
        self.resolver.resolve(config)

        with self.admission_lock:
            active = self.store.count_active()
            if active >= self.max_concurrent:
                logging.warning(f"Rejected {kind.lower()} job: {active} active jobs, limit {self.max_concurrent}")
                raise CapacityExceeded(self.max_concurrent)
            job = self.store.create(kind, subtype, config, created_by=submitted_by)

        job_id = job["job_id"]
        logging.info(f"[job_id={job_id}] Submitted {kind.lower()} job. subtype={subtype} created_by={submitted_by}")
        future = self.executor.submit(self.runner.run, job_id)
        with self.lock:
            self.futures[job_id] = future
        future.add_done_callback(lambda f, job_id=job_id: self._on_done(job_id, f))
        return job_id

    def _on_done(self, job_id, future):
        with self.lock:
            self.futures.pop(job_id, None)
        if not future.cancelled() and future.exception() is not None:
            logging.error(f"[job_id={job_id}] Runner crashed: {future.exception()}")

    def cancel(self, job_id: str) -> str:
        previous = self.store.request_cancel(job_id)
        if previous == JobStatus.RUNNING.value:
            self.registry.cancel(job_id)
            logging.info(f"[job_id={job_id}] Cancellation requested for running job.")
            return JobStatus.RUNNING.value
        logging.info(f"[job_id={job_id}] Cancelled pending job.")
        return JobStatus.CANCELLED.value

    def get_status(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get(job_id)
        return {
            "job_id": job["job_id"],
            "kind": job["kind"],
            "subtype": job["subtype"],
            "status": job["status"],
            "progress": progress_for(job, self.registry),
            "result_summary": job["result_summary"],
            "error": job["error"],
            "cancel_requested": job["cancel_requested"],
            "created_by": job["created_by"],
            "created_at": job["created_at"],
            "started_at": job["started_at"],
            "completed_at": job["completed_at"],
            "duration": job["duration"],
        }

    def get_results(self, job_id: str) -> Dict[str, Any]:
        job = self.store.get(job_id, include_findings=True)
        if job["status"] != JobStatus.COMPLETED.value:
            raise InvalidState(job_id, job["status"], "return results")
        return job

    def list_jobs(self, kind=None, subtype=None, status=None, start_date=None, end_date=None,
                  created_by=None, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        jobs = self.store.list(
            kind=kind, subtype=subtype, status=status, start_date=start_date, end_date=end_date,
            created_by=created_by, limit=limit, offset=offset,
        )
        for job in jobs:
            job["progress"] = progress_for(job, self.registry)
        return jobs

    def delete_job(self, job_id: str) -> Dict[str, Any]:
        with self.lock:
            future = self.futures.get(job_id)
        if future is not None and not future.done():
            # terminal already, but its runner has not drained from the pool yet
            raise InvalidState(job_id, self.store.get(job_id)["status"], "be deleted yet")
        job = self.store.delete(job_id)
        result_file = job.get("result_file")
        if result_file and os.path.exists(result_file):
            try:
                os.remove(result_file)
            except OSError as e:
                logging.warning(f"[job_id={job_id}] Failed to delete result file {result_file}: {e}")
        logging.info(f"[job_id={job_id}] Deleted job.")
        return job

    def stats(self, timeframe: str = "30d") -> Dict[str, Any]:
        if timeframe not in TIMEFRAMES:
            raise InvalidConfiguration(f"Unsupported timeframe: {timeframe}")
        data = self.store.stats(since=utcnow() - TIMEFRAMES[timeframe])
        data["timeframe"] = timeframe
        data["max_concurrent"] = self.max_concurrent
        return data

    def wait(self, job_id: str, timeout: float = None) -> Dict[str, Any]:
        """Block until the runner for job_id has finished, then return its status."""
        with self.lock:
            future = self.futures.get(job_id)
        if future is not None:
            done, _ = wait_futures([future], timeout=timeout)
            if not done:
                raise TimeoutError(f"Job {job_id} still running after {timeout}s")
        return self.get_status(job_id)

    def reconcile_orphans(self) -> List[str]:
        with self.lock:
            if self.futures:
                return []
        orphaned = self.store.fail_orphaned(ORPHANED_ERROR)
        for job_id in orphaned:
            self.registry.clear(job_id)
        return orphaned

    def schedule(self, kind: str, subtype: str, configuration: dict, schedule: dict,
                 name: str = None, submitted_by: str = None) -> Dict[str, Any]:
        """Store a recurring job definition. Each firing goes through submit()."""
        kind, subtype, config = validate_job(kind, subtype, configuration)
        self.resolver.resolve(config)
        try:
            definition = ScheduleDefinition.model_validate(schedule or {})
        except ValidationError as e:
            raise InvalidConfiguration(f"Invalid schedule: {_error_details(e, 'schedule')}")

        time = definition.time or DEFAULT_TIMES[kind]
        upcoming = None
        if definition.enabled:
            upcoming = next_run(definition.frequency, time, definition.day_of_week, definition.day_of_month)
        record = self.store.create_schedule(
            kind, subtype, config,
            frequency=definition.frequency, time=time,
            day_of_week=definition.day_of_week, day_of_month=definition.day_of_month,
            enabled=definition.enabled, next_run=upcoming, name=name, created_by=submitted_by,
        )
        logging.info(
            f"[schedule_id={record['schedule_id']}] Scheduled {kind.lower()} job. subtype={subtype} "
            f"cron='{record['cron']}' next_run={record['next_run']}"
        )
        return record

    def list_schedules(self, kind: str = None, enabled: bool = None) -> List[Dict[str, Any]]:
        return self.store.list_schedules(kind=kind, enabled=enabled)

    def run_due_schedules(self, now=None) -> List[str]:
        """Submit every enabled schedule whose next_run has passed. Returns the new job ids."""
        now = now or utcnow()
        submitted = []
        for schedule in self.store.due_schedules(now):
            schedule_id = schedule["schedule_id"]
            try:
                job_id = self.submit(
                    schedule["kind"], schedule["subtype"], schedule["configuration"],
                    submitted_by=schedule["created_by"],
                )
            except CapacityExceeded:
                # stays due; picked up again on the next tick
                logging.warning(f"[schedule_id={schedule_id}] Deferred: concurrency limit reached.")
                continue
            except AdmissionError as e:
                logging.warning(f"[schedule_id={schedule_id}] Skipped this run: {e.message}")
                job_id = None
            upcoming = next_run(
                schedule["frequency"], schedule["time"],
                schedule["day_of_week"], schedule["day_of_month"], after=now,
            )
            self.store.mark_schedule_run(schedule_id, now, upcoming, job_id=job_id)
            if job_id:
                submitted.append(job_id)
        return submitted

    def start_scheduler(self, interval: float):
        if self.scheduler is not None:
            return
        self.scheduler_stop.clear()
        self.scheduler = threading.Thread(
            target=self._schedule_loop, args=(interval,), name="job-scheduler", daemon=True
        )
        self.scheduler.start()
        logging.info(f"Job scheduler started. interval={interval}s")

    def _schedule_loop(self, interval):
        while not self.scheduler_stop.wait(interval):
            try:
                self.run_due_schedules()
            except Exception as e:
                logging.error(f"Scheduled job tick failed: {e}")

    def shutdown(self, wait: bool = True):
        self.scheduler_stop.set()
        if self.scheduler is not None:
            self.scheduler.join(timeout=5)
            self.scheduler = None
        self.executor.shutdown(wait=wait)


def resolve_max_concurrent(store: JobStore, settings: Settings) -> int:
    value = store.get_system_setting(CONCURRENCY_SETTING, settings.max_concurrent_jobs)
    try:
        limit = int(value)
    except (TypeError, ValueError):
        limit = 0
    if limit < 1:
        logging.warning(f"Ignoring invalid {CONCURRENCY_SETTING} setting: {value!r}")
        return settings.max_concurrent_jobs
    return limit


def build_orchestrator(settings: Settings, session_factory) -> Orchestrator:
    store = JobStore(session_factory)
    asset_store = SqlAssetStore(session_factory)
    return Orchestrator(
        store=store,
        registry=build_registry(settings),
        resolver=TargetResolver(asset_store),
        handlers=default_handlers(store, asset_store),
        max_concurrent=resolve_max_concurrent(store, settings),
        settings=settings,
    )
