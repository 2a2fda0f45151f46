# src/api/routes.py
from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import FileResponse
from api.schemas import (
    JobStatusResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    JobSummary,
    ReportSubmitRequest,
    ScanSubmitRequest,
    ScheduleRequest,
    ScheduleResponse,
)
from engine.config import settings
from engine.db import SessionLocal, engine, init_db
from engine.errors import InvalidState
from engine.models import JobKind
from engine.orchestrator import Orchestrator, build_orchestrator
from utils.scripts_utils import CONTENT_TYPES
from datetime import datetime, timezone
from typing import List, Optional
import logging
import os
import threading

router = APIRouter()

_orchestrator = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            init_db(engine)
            _orchestrator = build_orchestrator(settings, SessionLocal)
            orphaned = _orchestrator.reconcile_orphans()
            if settings.schedule_poll_seconds:
                _orchestrator.start_scheduler(settings.schedule_poll_seconds)
            logging.info(
                f"Job orchestrator ready. max_concurrent={_orchestrator.max_concurrent} "
                f"orphaned_jobs_failed={len(orphaned)}"
            )
        return _orchestrator


def shutdown_orchestrator():
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is not None:
            _orchestrator.shutdown(wait=True)
            _orchestrator = None


def _naive_utc(value: Optional[datetime]):
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.post(
    "/jobs",
    summary="Submit a scan or report job",
    response_description="Job ID and submission status",
    tags=["Jobs"],
    status_code=201,
    response_model=JobSubmitResponse,
    responses={
        201: {"description": "Job accepted"},
        400: {"description": "Invalid configuration or empty target set"},
        429: {"description": "Maximum concurrent jobs reached"},
    },
)
def submit_job(
    request: JobSubmitRequest,
    x_user_id: Optional[str] = Header(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Submit a job. Returns immediately; poll GET /jobs/{job_id} for progress.
    """
    job_id = orchestrator.submit(request.kind, request.subtype, request.configuration, submitted_by=x_user_id)
    return {"job_id": job_id, "status": "pending"}


@router.post("/scans", status_code=201, response_model=JobSubmitResponse, tags=["Jobs"],
             summary="Start a scan job")
def start_scan(
    request: ScanSubmitRequest,
    x_user_id: Optional[str] = Header(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    job_id = orchestrator.submit(JobKind.SCAN.value, request.scan_type, request.configuration, submitted_by=x_user_id)
    return {"job_id": job_id, "status": "pending"}


@router.post("/reports", status_code=201, response_model=JobSubmitResponse, tags=["Jobs"],
             summary="Start a report generation job")
def generate_report(
    request: ReportSubmitRequest,
    x_user_id: Optional[str] = Header(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    job_id = orchestrator.submit(JobKind.REPORT.value, request.report_type, request.configuration, submitted_by=x_user_id)
    return {"job_id": job_id, "status": "pending"}


@router.get(
    "/jobs",
    summary="Query job history",
    response_description="Jobs matching the filters, newest first",
    tags=["Jobs"],
    response_model=List[JobSummary],
)
def list_jobs(
    kind: Optional[str] = None,
    subtype: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    created_by: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.list_jobs(
        kind=kind, subtype=subtype, status=status,
        start_date=_naive_utc(start_date), end_date=_naive_utc(end_date),
        created_by=created_by, limit=limit, offset=offset,
    )


@router.post(
    "/jobs/schedules",
    summary="Schedule a recurring scan or report",
    tags=["Schedules"],
    status_code=201,
    response_model=ScheduleResponse,
    responses={400: {"description": "Invalid configuration or empty target set"}},
)
def create_schedule(
    request: ScheduleRequest,
    x_user_id: Optional[str] = Header(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Each firing submits an ordinary job and is subject to the same concurrency limit.
    """
    return orchestrator.schedule(
        request.kind, request.subtype, request.configuration,
        request.schedule.model_dump(), name=request.name, submitted_by=x_user_id,
    )


@router.get("/jobs/schedules", summary="List scheduled jobs", tags=["Schedules"],
            response_model=List[ScheduleResponse])
def list_schedules(
    kind: Optional[str] = None,
    enabled: Optional[bool] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return orchestrator.list_schedules(kind=kind, enabled=enabled)


@router.get("/jobs/stats", summary="Job statistics", tags=["Jobs"], response_model=dict)
def job_stats(timeframe: str = "30d", orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.stats(timeframe)


@router.get(
    "/jobs/{job_id}",
    summary="Get job status and progress",
    tags=["Jobs"],
    response_model=JobStatusResponse,
    responses={404: {"description": "Job not found"}},
)
def get_job_status(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.get_status(job_id)


@router.post(
    "/jobs/{job_id}/cancel",
    summary="Cancel a pending or running job",
    tags=["Jobs"],
    response_model=dict,
    responses={404: {"description": "Job not found"}, 409: {"description": "Job already finished"}},
)
def cancel_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    """
    A pending job is cancelled at once. A running job stops before its next target.
    """
    status = orchestrator.cancel(job_id)
    return {"success": True, "job_id": job_id, "status": status, "message": "Cancellation accepted"}


@router.get("/jobs/{job_id}/results", summary="Get findings of a completed job", tags=["Jobs"], response_model=dict)
def get_job_results(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.get_results(job_id)


@router.get("/jobs/{job_id}/download", summary="Download a generated report", tags=["Jobs"])
def download_report(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    job = orchestrator.get_results(job_id)
    if job["kind"] != JobKind.REPORT.value or not job["result_file"] or not os.path.exists(job["result_file"]):
        raise InvalidState(job_id, job["status"], "be downloaded")
    fmt = job["configuration"].get("format", "pdf")
    return FileResponse(
        job["result_file"],
        filename=os.path.basename(job["result_file"]),
        media_type=CONTENT_TYPES.get(fmt, "application/octet-stream"),
    )


@router.delete(
    "/jobs/{job_id}",
    summary="Delete a finished job and its result file",
    tags=["Jobs"],
    response_model=dict,
    responses={404: {"description": "Job not found"}, 409: {"description": "Job still active"}},
)
def delete_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    orchestrator.delete_job(job_id)
    return {"success": True, "message": f"Job {job_id} and associated file deleted."}
