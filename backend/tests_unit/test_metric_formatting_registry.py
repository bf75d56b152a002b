"""
Metric Registry & Formatting Tests (Unit)
=========================================

WHAT: Unit tests for the metric catalog and display formatting.
WHY: Metric names and display strings are the public contract with the dashboard.

NOTE:
These tests live outside `backend/salesmetrics/tests/` to avoid loading the
integration-test `conftest.py`.

REFERENCES:
- backend/salesmetrics/metrics/registry.py
- backend/salesmetrics/services/metrics_engine.py:format_value
"""

from datetime import date

import pytest

from salesmetrics.metrics.registry import (
    METRICS_REGISTRY,
    AppliesTo,
    TargetType,
    all_metrics,
    get_metric,
)
from salesmetrics.services.metrics_engine import COMPUTE_STRATEGIES, SOURCE_MODELS, DateRange, format_value


ACCOUNT_METRICS = {
    "total_appointments",
    "total_dials",
    "total_discoveries",
    "total_leads",
    "show_rate",
    "close_rate",
    "total_revenue",
    "answer_rate",
    "booking_rate",
}


def test_account_catalog_is_complete() -> None:
    names = {m.name for m in all_metrics() if m.applies_to == AppliesTo.account}
    assert names == ACCOUNT_METRICS


def test_every_definition_is_executable() -> None:
    for definition in all_metrics():
        assert definition.compute_key in COMPUTE_STRATEGIES, definition.name
        assert definition.source in SOURCE_MODELS, definition.name
        if definition.applies_to == AppliesTo.user:
            assert definition.user_role in ("setter", "sales_rep"), definition.name


def test_registry_is_read_only() -> None:
    with pytest.raises(TypeError):
        METRICS_REGISTRY["custom"] = get_metric("total_dials")  # type: ignore[index]


def test_unknown_metric_lookup_returns_none() -> None:
    assert get_metric("does_not_exist") is None


@pytest.mark.parametrize(
    "value,target_type,expected",
    [
        (1234, TargetType.count, "1234"),
        (0, TargetType.count, "0"),
        (None, TargetType.count, "0"),
        (1234.5, TargetType.currency, "$1,234.50"),
        (-20, TargetType.currency, "-$20.00"),
        (0.25, TargetType.ratio, "25.0%"),
        (0.2567, TargetType.ratio, "25.7%"),
    ],
)
def test_format_value(value, target_type, expected) -> None:
    assert format_value(value, target_type) == expected


def test_previous_period_has_equal_length() -> None:
    january = DateRange(date(2024, 1, 1), date(2024, 1, 31))

    previous = january.previous_period()

    assert previous == DateRange(date(2023, 12, 1), date(2023, 12, 31))
    assert previous.days == january.days
