"""
Metrics Engine
==============

Executes registered metrics for an account (or one user of an account) over a
business-local date range, with optional period-over-period comparison.

WHAT: Single place where dashboard numbers are computed
WHY: Every widget, comparison card and leaderboard reads the same definitions
HOW: Registry definition -> compute strategy -> SQL aggregate over local_date

Design Principles:
- Range filters apply to `local_date`, never to raw UTC timestamps
- Unknown metrics and malformed scopes fail before any store access
- The engine performs no authorization; callers check the Access Control Gate
- percent_change is None when the previous value is 0
- Store errors are wrapped in ComputeFailed (with cause) and not retried

Usage:
    >>> engine = MetricsEngine(db)
    >>> result = engine.calculate(
    ...     MetricScope(account_id=account.id),
    ...     "total_appointments",
    ...     DateRange(date(2024, 1, 1), date(2024, 1, 31)),
    ...     CalculateOptions(comparison_range=DateRange(date(2023, 12, 1), date(2023, 12, 31))),
    ... )
    >>> result.comparison.percent_change
    0.25

References:
- salesmetrics/metrics/registry.py: Metric definitions
- salesmetrics/services/local_date_service.py: local_date buckets
- salesmetrics/routers/metrics.py: HTTP surface
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salesmetrics.errors import ComputeFailed, NotFoundError, ValidationError
from salesmetrics.metrics.registry import AppliesTo, MetricDefinition, TargetType, get_metric
from salesmetrics.models import (
    Appointment,
    CallOutcomeEnum,
    Contact,
    Dial,
    Discovery,
    ShowOutcomeEnum,
)
from salesmetrics.telemetry import capture_exception

logger = logging.getLogger(__name__)


SOURCE_MODELS = {
    "appointments": Appointment,
    "dials": Dial,
    "discoveries": Discovery,
    "contacts": Contact,
}


# =============================================================================
# CONTRACT TYPES
# =============================================================================

@dataclass(frozen=True)
class DateRange:
    """Inclusive range of business-local dates."""
    start: date
    end: date

    def validate(self) -> None:
        if self.start is None or self.end is None:
            raise ValidationError("Start and end dates are required")
        if self.start > self.end:
            raise ValidationError(
                "Start date must be before end date",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()},
            )

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def previous_period(self) -> "DateRange":
        """Window of equal length ending the day before `start`."""
        end = self.start - timedelta(days=1)
        return DateRange(start=end - timedelta(days=self.days - 1), end=end)


@dataclass(frozen=True)
class MetricScope:
    account_id: UUID
    user_id: Optional[UUID] = None


@dataclass
class CalculateOptions:
    comparison_range: Optional[DateRange] = None
    rep_ids: Optional[List[UUID]] = None
    setter_ids: Optional[List[UUID]] = None


@dataclass
class Comparison:
    previous_value: float
    delta: float
    percent_change: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "previous_value": self.previous_value,
            "delta": self.delta,
            "percent_change": self.percent_change,
        }


@dataclass
class MetricResult:
    metric_name: str
    target_type: TargetType
    value: float
    display_value: str
    executed_at: str
    execution_time_ms: int
    comparison: Optional[Comparison] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric_name": self.metric_name,
            "value": self.value,
            "display_value": self.display_value,
            "comparison": self.comparison.to_dict() if self.comparison else None,
            "executed_at": self.executed_at,
            "execution_time_ms": self.execution_time_ms,
        }


@dataclass
class BreakdownRow:
    user_id: Optional[UUID]
    value: float
    display_value: str


@dataclass
class BreakdownResult:
    metric_name: str
    role: str
    rows: List[BreakdownRow] = field(default_factory=list)
    executed_at: str = ""
    execution_time_ms: int = 0


# =============================================================================
# FORMATTING
# =============================================================================

def format_value(value: Optional[float], target_type: TargetType) -> str:
    """Format a metric value for display.

    count     plain integer ("1234")
    currency  dollars with two decimals ("$1,234.50")
    ratio     fraction as a one-decimal percentage (0.256 -> "25.6%")
    """
    value = value or 0
    if target_type == TargetType.currency:
        sign = "-" if value < 0 else ""
        return f"{sign}${abs(value):,.2f}"
    if target_type == TargetType.ratio:
        return f"{value * 100:.1f}%"
    return str(int(round(value)))


# =============================================================================
# COMPUTE STRATEGIES
# =============================================================================

def _ratio(numerator: Any, denominator: Any) -> float:
    if not denominator:
        return 0.0
    return float(numerator or 0) / float(denominator)


def _count_where(condition):
    return func.count(case((condition, 1)))


@dataclass(frozen=True)
class ComputeStrategy:
    """Aggregate columns to select plus a reducer over the selected row."""
    columns: Callable[[Any], Sequence[Any]]
    combine: Callable[[Sequence[Any]], float]


COMPUTE_STRATEGIES: Dict[str, ComputeStrategy] = {
    "row_count": ComputeStrategy(
        columns=lambda m: [func.count(m.id)],
        combine=lambda r: int(r[0] or 0),
    ),
    "sum_cash_collected": ComputeStrategy(
        columns=lambda m: [func.coalesce(func.sum(m.cash_collected), 0)],
        combine=lambda r: round(float(Decimal(str(r[0] or 0))), 2),
    ),
    "show_ratio": ComputeStrategy(
        columns=lambda m: [_count_where(m.call_outcome == CallOutcomeEnum.show), func.count(m.id)],
        combine=lambda r: _ratio(r[0], r[1]),
    ),
    "close_ratio": ComputeStrategy(
        columns=lambda m: [
            _count_where((m.call_outcome == CallOutcomeEnum.show) & (m.show_outcome == ShowOutcomeEnum.won)),
            _count_where(m.call_outcome == CallOutcomeEnum.show),
        ],
        combine=lambda r: _ratio(r[0], r[1]),
    ),
    "answer_ratio": ComputeStrategy(
        columns=lambda m: [_count_where(m.answered.is_(True)), func.count(m.id)],
        combine=lambda r: _ratio(r[0], r[1]),
    ),
    "booking_ratio": ComputeStrategy(
        columns=lambda m: [_count_where(m.booked.is_(True)), func.count(m.id)],
        combine=lambda r: _ratio(r[0], r[1]),
    ),
}


# =============================================================================
# ENGINE
# =============================================================================

def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MetricsEngine:
    """Computes registered metrics against one database session."""

    def __init__(self, db: Session):
        self.db = db

    # -- public ---------------------------------------------------------------

    def calculate(
        self,
        scope: MetricScope,
        metric_name: str,
        date_range: DateRange,
        options: Optional[CalculateOptions] = None,
    ) -> MetricResult:
        """Compute one metric over `date_range`, optionally against a comparison range.

        Raises:
            NotFoundError: metric is not registered
            ValidationError: missing account, missing user for a user metric,
                or malformed range
            ComputeFailed: the store failed during aggregation
        """
        started = time.perf_counter()
        options = options or CalculateOptions()
        definition = self._definition(metric_name)
        self._validate(definition, scope, date_range, options)

        value = self._aggregate(definition, scope, date_range, options)

        comparison = None
        if options.comparison_range is not None:
            previous = self._aggregate(definition, scope, options.comparison_range, options)
            comparison = self._compare(value, previous)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "[METRICS] %s account=%s user=%s range=%s..%s value=%s (%sms)",
            metric_name, scope.account_id, scope.user_id, date_range.start, date_range.end, value, elapsed_ms,
        )
        return MetricResult(
            metric_name=metric_name,
            target_type=definition.target_type,
            value=value,
            display_value=format_value(value, definition.target_type),
            comparison=comparison,
            executed_at=_utc_iso(),
            execution_time_ms=elapsed_ms,
        )

    def breakdown(
        self,
        scope: MetricScope,
        metric_name: str,
        date_range: DateRange,
        role: str,
        options: Optional[CalculateOptions] = None,
    ) -> BreakdownResult:
        """Compute a metric per resolved setter or sales rep.

        Rows whose assignee is still unresolved are grouped under user_id=None.
        """
        started = time.perf_counter()
        options = options or CalculateOptions()
        definition = self._definition(metric_name)
        self._validate(definition, scope, date_range, options)

        model = SOURCE_MODELS[definition.source]
        group_col = getattr(model, f"{role}_user_id", None)
        if role not in ("setter", "sales_rep") or group_col is None:
            raise ValidationError(
                f"Metric '{metric_name}' cannot be broken down by {role}",
                details={"metric": metric_name, "role": role},
            )

        strategy = COMPUTE_STRATEGIES[definition.compute_key]
        filters = self._filters(definition, model, scope, date_range, options)
        try:
            rows = (
                self.db.query(group_col, *strategy.columns(model))
                .filter(*filters)
                .group_by(group_col)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._compute_failed(e, metric_name, scope) from e

        result_rows = []
        for row in rows:
            value = strategy.combine(row[1:])
            result_rows.append(
                BreakdownRow(user_id=row[0], value=value, display_value=format_value(value, definition.target_type))
            )
        result_rows.sort(key=lambda r: (-r.value, str(r.user_id or "")))

        return BreakdownResult(
            metric_name=metric_name,
            role=role,
            rows=result_rows,
            executed_at=_utc_iso(),
            execution_time_ms=int((time.perf_counter() - started) * 1000),
        )

    # -- internals ------------------------------------------------------------

    @staticmethod
    def _definition(metric_name: str) -> MetricDefinition:
        definition = get_metric(metric_name)
        if definition is None:
            raise NotFoundError(f"Metric '{metric_name}' not found", details={"metric": metric_name})
        return definition

    @staticmethod
    def _validate(
        definition: MetricDefinition,
        scope: MetricScope,
        date_range: DateRange,
        options: CalculateOptions,
    ) -> None:
        if scope is None or scope.account_id is None:
            raise ValidationError("Account ID is required")
        if date_range is None:
            raise ValidationError("Date range is required")
        date_range.validate()
        if options.comparison_range is not None:
            options.comparison_range.validate()
        if definition.applies_to == AppliesTo.user and scope.user_id is None:
            raise ValidationError(
                f"Metric '{definition.name}' requires a user",
                details={"metric": definition.name},
            )

    @staticmethod
    def _filters(
        definition: MetricDefinition,
        model: Any,
        scope: MetricScope,
        date_range: DateRange,
        options: CalculateOptions,
    ) -> List[Any]:
        filters = [
            model.account_id == scope.account_id,
            model.local_date >= date_range.start,
            model.local_date <= date_range.end,
        ]
        if definition.applies_to == AppliesTo.user:
            filters.append(getattr(model, f"{definition.user_role}_user_id") == scope.user_id)
        if options.rep_ids and hasattr(model, "sales_rep_user_id"):
            filters.append(model.sales_rep_user_id.in_(options.rep_ids))
        if options.setter_ids and hasattr(model, "setter_user_id"):
            filters.append(model.setter_user_id.in_(options.setter_ids))
        return filters

    def _aggregate(
        self,
        definition: MetricDefinition,
        scope: MetricScope,
        date_range: DateRange,
        options: CalculateOptions,
    ) -> float:
        model = SOURCE_MODELS[definition.source]
        strategy = COMPUTE_STRATEGIES[definition.compute_key]
        filters = self._filters(definition, model, scope, date_range, options)
        try:
            row = self.db.query(*strategy.columns(model)).filter(*filters).one()
        except SQLAlchemyError as e:
            raise self._compute_failed(e, definition.name, scope) from e
        return strategy.combine(row)

    @staticmethod
    def _compare(current: float, previous: float) -> Comparison:
        delta = current - previous
        percent_change = None if previous == 0 else delta / previous
        return Comparison(previous_value=previous, delta=delta, percent_change=percent_change)

    def _compute_failed(self, error: SQLAlchemyError, metric_name: str, scope: MetricScope) -> ComputeFailed:
        self.db.rollback()
        logger.exception("[METRICS] Failed to compute %s for account %s", metric_name, scope.account_id)
        capture_exception(error, extra={"metric": metric_name, "account_id": str(scope.account_id)})
        return ComputeFailed(
            "Failed to compute metric",
            cause=error,
            details={"metric": metric_name},
        )
