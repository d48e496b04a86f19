"""
Pydantic schemas for the API: the response envelope and request bodies.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ledgersync.core.clock import utcnow
from ledgersync.models.sync_failure import EntityKind
from ledgersync.services.consistency_checker import InconsistencyType


class APIResponse(BaseModel):
    """Base API response model."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SuccessResponse(APIResponse):
    """Success response model."""
    data: Optional[Any] = None


class ErrorResponse(APIResponse):
    """Error response model."""
    success: bool = False
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


def create_success_response(data: Any = None, message: str = None) -> SuccessResponse:
    """Create a success response."""
    return SuccessResponse(data=data, message=message)


def create_error_response(
    message: str,
    error_code: str = None,
    details: Dict[str, Any] = None
) -> ErrorResponse:
    """Create an error response."""
    return ErrorResponse(
        message=message,
        error_code=error_code,
        details=details
    )


# Requests

class ConsistencyRepairRequest(BaseModel):
    lookback_days: int = Field(default=30, ge=1, le=365)
    concurrency: int = Field(default=8, ge=1, le=50)
    types: Optional[List[InconsistencyType]] = Field(
        default=None,
        description="Restrict repair to these finding types; all types when omitted"
    )


class RetryFailureRequest(BaseModel):
    """Retry by failure id, or by (kind, entity id)."""
    failure_id: Optional[int] = None
    kind: Optional[EntityKind] = None
    entity_id: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self) -> "RetryFailureRequest":
        if self.failure_id is None and not (self.kind and self.entity_id):
            raise ValueError("Provide failure_id, or both kind and entity_id")
        return self


class ScheduleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    cron_expression: str
    action: str = Field(description="Name of the built-in job to run")
    description: str = ""
    enabled: bool = True


class ScheduleUpdate(BaseModel):
    cron_expression: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None


class MaintenanceJobCreate(BaseModel):
    operation: str
    company_id: str = Field(min_length=1)
    requested_by: Optional[str] = None
