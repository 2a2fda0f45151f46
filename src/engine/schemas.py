# src/engine/schemas.py
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Literal, Optional


class JobConfiguration(BaseModel):
    """Job configuration captured at submission time."""
    model_config = ConfigDict(extra="forbid")

    targets: List[str] = Field(default_factory=list, description="Literal endpoints (IP or hostname)")
    asset_ids: List[str] = Field(default_factory=list, description="Asset references resolved when the job runs")
    deep_scan: bool = Field(False, description="Widen vulnerability checks")
    timeout: int = Field(300, ge=30, le=3600, description="Advisory per-job time budget in seconds")
    ports: Optional[List[int]] = Field(None, description="Ports checked by network scans")
    frameworks: Optional[List[str]] = Field(None, description="Compliance frameworks to evaluate")
    format: Literal['pdf', 'excel', 'csv', 'html', 'json'] = Field('pdf', description="Report output format")
    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode='after')
    def validate_targets(self) -> 'JobConfiguration':
        if any(not item or not item.strip() for item in self.targets):
            raise ValueError("targets must not contain blank entries")
        self.targets = [item.strip() for item in self.targets]
        return self

    @model_validator(mode='after')
    def validate_ports(self) -> 'JobConfiguration':
        if self.ports is not None and any(port < 1 or port > 65535 for port in self.ports):
            raise ValueError("ports must be between 1 and 65535")
        return self


class ScheduleDefinition(BaseModel):
    """When a recurring job fires. day_of_week uses cron numbering, 0 = Sunday."""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(True, description="Disabled schedules are stored but never fire")
    frequency: Literal['daily', 'weekly', 'monthly'] = Field(..., description="Recurrence")
    time: Optional[str] = Field(None, pattern=r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$", description="HH:MM in UTC")
    day_of_week: Optional[int] = Field(None, ge=0, le=6, description="Weekly schedules only")
    day_of_month: Optional[int] = Field(None, ge=1, le=31, description="Monthly schedules only")
