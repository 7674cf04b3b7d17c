"""Pydantic schemas for request/response payloads."""

from datetime import date
from uuid import UUID
from typing import Optional, List, Any, Dict

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# BACKFILL
# =============================================================================

class BackfillTriggerRequest(BaseModel):
    """Payload to start a chunked transaction backfill for one organization."""

    organization_id: UUID = Field(description="Organization to backfill")
    days_back: int = Field(
        default=365, ge=1, le=3650,
        description="Size of the window ending today, in days",
    )
    chunk_size_days: int = Field(
        default=30, ge=1, le=365,
        description="Days per chunk; the window is split newest chunk first",
    )
    start_immediately: bool = Field(
        default=True,
        description="Enqueue the job for the worker right away",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "organization_id": "123e4567-e89b-12d3-a456-426614174000",
                "days_back": 90,
                "chunk_size_days": 30,
                "start_immediately": True,
            }
        }
    }


class DateRange(BaseModel):
    start: date
    end: date


class BackfillTriggerResponse(BaseModel):
    success: bool = True
    job_id: UUID
    chunks_created: int
    estimated_minutes: int
    date_range: DateRange
    enqueued: bool = Field(default=False, description="Whether the worker was notified")


class BackfillCancelRequest(BaseModel):
    """Payload to cancel a running backfill job."""

    job_id: UUID = Field(description="Backfill job to cancel")
    organization_id: Optional[UUID] = Field(
        default=None,
        description="When given, the job must belong to this organization",
    )
    reason: Optional[str] = Field(default=None, max_length=500)


class BackfillCancelResponse(BaseModel):
    success: bool = True
    job_id: UUID
    status: str
    cancelled_chunks: int
    message: str


# =============================================================================
# ATTRIBUTION
# =============================================================================

class AutoMatchRequest(BaseModel):
    """Auto-match payload; accepts camelCase (organizationId) or snake_case."""

    model_config = ConfigDict(populate_by_name=True)

    organization_id: Optional[UUID] = Field(
        default=None, alias="organizationId",
        description="Restrict to one organization (admins may omit)",
    )
    dry_run: bool = Field(
        default=True, alias="dryRun",
        description="Preview matches without writing attribution records",
    )
    min_confidence: float = Field(
        default=0.7, ge=0.0, le=1.0, alias="minConfidence",
        description="Matches below this confidence are reported as unmatched",
    )


class AttributionBackfillRequest(BaseModel):
    """Historical transaction-level attribution payload."""

    organization_id: UUID
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dry_run: bool = False

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class DetectMismatchesRequest(BaseModel):
    organization_id: UUID
    dry_run: bool = True
    limit: int = Field(default=100, ge=1, le=1000)
    include_valid: bool = False


class DetectMismatchesResponse(BaseModel):
    success: bool = True
    dry_run: bool
    summary: Dict[str, int]
    results: List[Dict[str, Any]]
    errors: List[Dict[str, Any]] = []


class RecoverClickIdsRequest(BaseModel):
    organization_id: UUID
    dry_run: bool = True
    limit: int = Field(default=500, ge=1, le=5000)


class RefcodeMappingSyncRequest(BaseModel):
    organization_id: UUID


# =============================================================================
# RECONCILIATION
# =============================================================================

class ReconcileRequest(BaseModel):
    """Reconcile one organization, or every organization with credentials."""

    organization_id: Optional[UUID] = None


class ReconciliationResultOut(BaseModel):
    organization_id: UUID
    organization_name: str
    start_date: date
    end_date: date
    local_count: int
    local_total: float
    external_count: Optional[int] = None
    external_total: Optional[float] = None
    count_difference: int
    amount_difference: float
    percent_diff: float
    has_discrepancy: bool
    backfill_triggered: bool
    backfill_job_id: Optional[UUID] = None
    status: str
    error: Optional[str] = None


class ReconcileResponse(BaseModel):
    success: bool = True
    date_range: DateRange
    results: List[ReconciliationResultOut]
    summary: Dict[str, int]
