# src/api/schemas.py
from pydantic import BaseModel, Field
from engine.schemas import ScheduleDefinition
from typing import Any, Dict, Literal, Optional


class JobSubmitRequest(BaseModel):
    kind: str = Field(..., description="Job kind: scan or report")
    subtype: str = Field(..., description="Scan or report type")
    configuration: Dict[str, Any] = Field(default_factory=dict)


class ScanSubmitRequest(BaseModel):
    scan_type: Literal['network', 'vulnerability', 'compliance', 'full'] = Field(..., description="Type of scan")
    configuration: Dict[str, Any] = Field(default_factory=dict)


class ReportSubmitRequest(BaseModel):
    report_type: Literal['assets', 'vulnerabilities', 'risks', 'compliance'] = Field(..., description="Type of report")
    configuration: Dict[str, Any] = Field(default_factory=dict)


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str


class JobStatusResponse(BaseModel):
    job_id: str
    kind: str
    subtype: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    result_summary: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    cancel_requested: bool = False
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration: Optional[int] = None


class JobSummary(BaseModel):
    job_id: str
    kind: str
    subtype: str
    status: str
    progress: int = 0
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration: Optional[int] = None
    error: Optional[str] = None


class ScheduleRequest(BaseModel):
    kind: str = Field(..., description="Job kind: scan or report")
    subtype: str = Field(..., description="Scan or report type")
    name: str = Field(..., min_length=1, max_length=200)
    configuration: Dict[str, Any] = Field(default_factory=dict)
    schedule: ScheduleDefinition


class ScheduleResponse(BaseModel):
    schedule_id: str
    name: Optional[str] = None
    kind: str
    subtype: str
    configuration: Dict[str, Any]
    frequency: str
    time: str
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    cron: str
    enabled: bool
    next_run: Optional[str] = None
    last_run: Optional[str] = None
    last_job_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
