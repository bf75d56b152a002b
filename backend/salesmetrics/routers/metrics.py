"""Metrics endpoints.

WHAT:
    HTTP surface of the metrics engine: single-metric calculation with
    optional comparison, per-user breakdowns, the metric catalog and the
    attribution filter options used by dashboard dropdowns.

WHY:
    The engine performs no authorization, so every handler checks the caller's
    account role before invoking it.

REFERENCES:
    - salesmetrics/services/metrics_engine.py
    - salesmetrics/services/attribution_linker.py: aggregate_filter_options
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, account_member, get_current_user, get_settings, require_account_role
from ..metrics.registry import all_metrics
from ..models import AccessRoleEnum, User
from ..services.attribution_linker import aggregate_filter_options
from ..services.metrics_engine import CalculateOptions, DateRange, MetricScope, MetricsEngine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/metrics",
    tags=["Metrics"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Invalid scope or range"},
        403: {"model": schemas.ErrorResponse, "description": "No access to the account"},
        404: {"model": schemas.ErrorResponse, "description": "Unknown metric"},
        500: {"model": schemas.ErrorResponse, "description": "Failed to compute metric"},
    },
)


def _range(payload: schemas.DateRangePayload) -> DateRange:
    return DateRange(start=payload.start, end=payload.end)


@router.post("/calculate", response_model=schemas.MetricResponse)
def calculate_metric(
    payload: schemas.CalculateMetricRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Calculate one metric for an account (or one of its users)."""
    require_account_role(db, current_user, payload.account_id, AccessRoleEnum.setter)

    date_range = _range(payload.date_range)
    comparison_range = None
    if payload.comparison_range is not None:
        comparison_range = _range(payload.comparison_range)
    elif payload.compare_previous_period:
        comparison_range = date_range.previous_period()

    result = MetricsEngine(db).calculate(
        MetricScope(account_id=payload.account_id, user_id=payload.user_id),
        payload.metric_name,
        date_range,
        CalculateOptions(
            comparison_range=comparison_range,
            rep_ids=payload.rep_ids,
            setter_ids=payload.setter_ids,
        ),
    )
    return result.to_dict()


@router.post("/breakdown", response_model=schemas.BreakdownResponse)
def metric_breakdown(
    payload: schemas.BreakdownRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Metric per setter or sales rep (leaderboards)."""
    require_account_role(db, current_user, payload.account_id, AccessRoleEnum.moderator)

    result = MetricsEngine(db).breakdown(
        MetricScope(account_id=payload.account_id),
        payload.metric_name,
        _range(payload.date_range),
        payload.role,
        CalculateOptions(rep_ids=payload.rep_ids, setter_ids=payload.setter_ids),
    )
    return {
        "metric_name": result.metric_name,
        "role": result.role,
        "rows": [
            {"user_id": row.user_id, "value": row.value, "display_value": row.display_value}
            for row in result.rows
        ],
        "executed_at": result.executed_at,
        "execution_time_ms": result.execution_time_ms,
    }


@router.get("/catalog", response_model=List[schemas.MetricDefinitionResponse])
def metric_catalog(current_user: User = Depends(get_current_user)):
    """List registered metrics."""
    return [definition.to_dict() for definition in all_metrics()]


@router.get("/options", response_model=schemas.FilterOptionsResponse)
def filter_options(
    account_id: UUID = Depends(account_member(AccessRoleEnum.setter)),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Distinct attribution values for dashboard filters."""
    return aggregate_filter_options(db, account_id, limit=settings.FILTER_OPTIONS_LIMIT)
