"""
Metric Registry
===============

WHAT:
    The catalog of named metrics the engine can compute. Each definition says
    who it applies to (an account or a single user), which activity table it
    aggregates, how values are formatted and which compute strategy runs it.

WHY:
    Metric names are the public contract with the dashboard. Keeping them in
    one immutable map built at import time means every request sees the same
    definitions and concurrent lookups need no locking.

Adding a metric:
    1. Pick or add a compute strategy in services/metrics_engine.COMPUTE_STRATEGIES
    2. Add a MetricDefinition to _DEFINITIONS below

REFERENCES:
    - salesmetrics/services/metrics_engine.py: executes definitions
    - salesmetrics/routers/metrics.py: /v1/metrics/catalog
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import List, Mapping, Optional


class AppliesTo(str, Enum):
    account = "account"
    user = "user"


class PeriodType(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    custom = "custom"


class TargetType(str, Enum):
    count = "count"
    currency = "currency"
    ratio = "ratio"


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    label: str
    description: str
    applies_to: AppliesTo
    target_type: TargetType
    compute_key: str
    source: str  # "appointments" | "dials" | "discoveries" | "contacts"
    period_type: PeriodType = PeriodType.custom
    user_role: Optional[str] = None  # "setter" | "sales_rep" for user metrics

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "label": self.label,
            "description": self.description,
            "applies_to": self.applies_to.value,
            "period_type": self.period_type.value,
            "target_type": self.target_type.value,
            "user_role": self.user_role,
        }


_DEFINITIONS = (
    # --- Account metrics ---------------------------------------------------
    MetricDefinition(
        name="total_appointments",
        label="Total Appointments",
        description="Count of appointments scheduled in the period",
        applies_to=AppliesTo.account,
        target_type=TargetType.count,
        compute_key="row_count",
        source="appointments",
    ),
    MetricDefinition(
        name="show_rate",
        label="Show Rate",
        description="Share of appointments that showed",
        applies_to=AppliesTo.account,
        target_type=TargetType.ratio,
        compute_key="show_ratio",
        source="appointments",
    ),
    MetricDefinition(
        name="close_rate",
        label="Close Rate",
        description="Share of shown appointments that were won",
        applies_to=AppliesTo.account,
        target_type=TargetType.ratio,
        compute_key="close_ratio",
        source="appointments",
    ),
    MetricDefinition(
        name="total_revenue",
        label="Total Revenue",
        description="Cash collected on appointments",
        applies_to=AppliesTo.account,
        target_type=TargetType.currency,
        compute_key="sum_cash_collected",
        source="appointments",
    ),
    MetricDefinition(
        name="total_dials",
        label="Total Dials",
        description="Count of outbound dials",
        applies_to=AppliesTo.account,
        target_type=TargetType.count,
        compute_key="row_count",
        source="dials",
    ),
    MetricDefinition(
        name="answer_rate",
        label="Answer Rate",
        description="Share of dials that were answered",
        applies_to=AppliesTo.account,
        target_type=TargetType.ratio,
        compute_key="answer_ratio",
        source="dials",
    ),
    MetricDefinition(
        name="booking_rate",
        label="Booking Rate",
        description="Share of dials that booked an appointment",
        applies_to=AppliesTo.account,
        target_type=TargetType.ratio,
        compute_key="booking_ratio",
        source="dials",
    ),
    MetricDefinition(
        name="total_discoveries",
        label="Total Discoveries",
        description="Count of discovery calls",
        applies_to=AppliesTo.account,
        target_type=TargetType.count,
        compute_key="row_count",
        source="discoveries",
    ),
    MetricDefinition(
        name="total_leads",
        label="Total Leads",
        description="Contacts created in the CRM during the period",
        applies_to=AppliesTo.account,
        target_type=TargetType.count,
        compute_key="row_count",
        source="contacts",
    ),
    # --- User metrics ------------------------------------------------------
    MetricDefinition(
        name="rep_appointments",
        label="Appointments (Rep)",
        description="Appointments taken by the sales rep",
        applies_to=AppliesTo.user,
        target_type=TargetType.count,
        compute_key="row_count",
        source="appointments",
        user_role="sales_rep",
    ),
    MetricDefinition(
        name="rep_show_rate",
        label="Show Rate (Rep)",
        description="Share of the rep's appointments that showed",
        applies_to=AppliesTo.user,
        target_type=TargetType.ratio,
        compute_key="show_ratio",
        source="appointments",
        user_role="sales_rep",
    ),
    MetricDefinition(
        name="rep_close_rate",
        label="Close Rate (Rep)",
        description="Share of the rep's shows that were won",
        applies_to=AppliesTo.user,
        target_type=TargetType.ratio,
        compute_key="close_ratio",
        source="appointments",
        user_role="sales_rep",
    ),
    MetricDefinition(
        name="rep_revenue",
        label="Revenue (Rep)",
        description="Cash collected on the rep's appointments",
        applies_to=AppliesTo.user,
        target_type=TargetType.currency,
        compute_key="sum_cash_collected",
        source="appointments",
        user_role="sales_rep",
    ),
    MetricDefinition(
        name="setter_appointments",
        label="Appointments Set",
        description="Appointments booked by the setter",
        applies_to=AppliesTo.user,
        target_type=TargetType.count,
        compute_key="row_count",
        source="appointments",
        user_role="setter",
    ),
    MetricDefinition(
        name="setter_dials",
        label="Dials (Setter)",
        description="Dials made by the setter",
        applies_to=AppliesTo.user,
        target_type=TargetType.count,
        compute_key="row_count",
        source="dials",
        user_role="setter",
    ),
)

METRICS_REGISTRY: Mapping[str, MetricDefinition] = MappingProxyType({d.name: d for d in _DEFINITIONS})


def get_metric(name: str) -> Optional[MetricDefinition]:
    return METRICS_REGISTRY.get(name)


def all_metrics() -> List[MetricDefinition]:
    return list(METRICS_REGISTRY.values())
