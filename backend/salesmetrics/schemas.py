"""Pydantic schemas for request/response payloads shared across routers."""

from datetime import date
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class ErrorResponse(BaseModel):
    """Body returned for domain errors."""

    code: str
    message: str
    details: Optional[dict] = None


# =============================================================================
# METRICS
# =============================================================================

class DateRangePayload(BaseModel):
    """Inclusive range of business-local dates (YYYY-MM-DD)."""

    start: date = Field(description="First local date", examples=["2024-01-01"])
    end: date = Field(description="Last local date", examples=["2024-01-31"])

    @model_validator(mode="after")
    def _check_order(self):
        if self.start > self.end:
            raise ValueError("start must be on or before end")
        return self


class CalculateMetricRequest(BaseModel):
    """Payload for POST /v1/metrics/calculate."""

    account_id: UUID
    metric_name: str = Field(examples=["total_appointments"])
    date_range: DateRangePayload
    comparison_range: Optional[DateRangePayload] = Field(
        default=None,
        description="Window to compare against (e.g. the previous month)",
    )
    compare_previous_period: bool = Field(
        default=False,
        description="Compare against the equal-length window right before date_range "
        "when comparison_range is not given",
    )
    user_id: Optional[UUID] = Field(default=None, description="Required for user metrics")
    rep_ids: Optional[List[UUID]] = None
    setter_ids: Optional[List[UUID]] = None

    model_config = {
        "json_schema_extra": {
            "example": {
                "account_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
                "metric_name": "total_appointments",
                "date_range": {"start": "2024-01-01", "end": "2024-01-31"},
                "comparison_range": {"start": "2023-12-01", "end": "2023-12-31"},
            }
        }
    }


class ComparisonResponse(BaseModel):
    previous_value: float
    delta: float
    percent_change: Optional[float] = Field(
        default=None,
        description="delta / previous_value; null when previous_value is 0",
    )


class MetricResponse(BaseModel):
    """Result of one metric calculation."""

    metric_name: str
    value: float
    display_value: str
    comparison: Optional[ComparisonResponse] = None
    executed_at: str
    execution_time_ms: int


class BreakdownRequest(BaseModel):
    """Payload for POST /v1/metrics/breakdown."""

    account_id: UUID
    metric_name: str
    date_range: DateRangePayload
    role: str = Field(pattern="^(setter|sales_rep)$")
    rep_ids: Optional[List[UUID]] = None
    setter_ids: Optional[List[UUID]] = None


class BreakdownRowResponse(BaseModel):
    user_id: Optional[UUID] = None
    value: float
    display_value: str


class BreakdownResponse(BaseModel):
    metric_name: str
    role: str
    rows: List[BreakdownRowResponse]
    executed_at: str
    execution_time_ms: int


class MetricDefinitionResponse(BaseModel):
    name: str
    label: str
    description: str
    applies_to: str
    period_type: str
    target_type: str
    user_role: Optional[str] = None


# Field -> distinct values, each list capped server-side
FilterOptionsResponse = Dict[str, List[str]]
