"""Tests for the metrics engine.

WHAT: Tests metric calculation, period comparison, validation ordering,
      store error wrapping and per-user breakdowns
WHY: Dashboard cards and leaderboards all read from MetricsEngine; numbers must
     be bucketed by business-local date and comparisons must never divide by zero

REFERENCES:
  - salesmetrics/services/metrics_engine.py
  - salesmetrics/metrics/registry.py
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from salesmetrics.errors import ComputeFailed, NotFoundError, ValidationError
from salesmetrics.models import Appointment, CallOutcomeEnum, Dial, ShowOutcomeEnum
from salesmetrics.services.local_date_service import stamp_local_dates
from salesmetrics.services.metrics_engine import (
    CalculateOptions,
    DateRange,
    MetricScope,
    MetricsEngine,
)

JANUARY = DateRange(date(2024, 1, 1), date(2024, 1, 31))
DECEMBER = DateRange(date(2023, 12, 1), date(2023, 12, 31))


def _add_appointments(db, account, count, when, **kwargs):
    for i in range(count):
        row = Appointment(account_id=account.id, date_booked_for=when + timedelta(minutes=i), **kwargs)
        stamp_local_dates(row, account.business_timezone)
        db.add(row)
    db.commit()


class TestCalculate:

    def test_count_with_previous_period_comparison(self, test_db_session, test_account):
        _add_appointments(test_db_session, test_account, 50, datetime(2024, 1, 15, 17, 0))
        _add_appointments(test_db_session, test_account, 40, datetime(2023, 12, 15, 17, 0))

        result = MetricsEngine(test_db_session).calculate(
            MetricScope(account_id=test_account.id),
            "total_appointments",
            JANUARY,
            CalculateOptions(comparison_range=DECEMBER),
        )

        assert result.value == 50
        assert result.display_value == "50"
        assert result.comparison.previous_value == 40
        assert result.comparison.delta == 10
        assert result.comparison.percent_change == pytest.approx(0.25)

    def test_zero_previous_value_has_no_percent_change(self, test_db_session, test_account):
        _add_appointments(test_db_session, test_account, 3, datetime(2024, 1, 15, 17, 0))

        result = MetricsEngine(test_db_session).calculate(
            MetricScope(account_id=test_account.id),
            "total_appointments",
            JANUARY,
            CalculateOptions(comparison_range=DECEMBER),
        )

        assert result.comparison.previous_value == 0
        assert result.comparison.delta == 3
        assert result.comparison.percent_change is None

    def test_range_filters_on_business_local_date(self, test_db_session, test_account):
        # 04:30 UTC on March 10th is still March 9th in New York
        _add_appointments(test_db_session, test_account, 1, datetime(2024, 3, 10, 4, 30))
        engine = MetricsEngine(test_db_session)
        scope = MetricScope(account_id=test_account.id)

        march_9 = engine.calculate(scope, "total_appointments", DateRange(date(2024, 3, 9), date(2024, 3, 9)))
        march_10 = engine.calculate(scope, "total_appointments", DateRange(date(2024, 3, 10), date(2024, 3, 10)))

        assert march_9.value == 1
        assert march_10.value == 0

    def test_other_accounts_are_excluded(self, test_db_session, test_account, test_account_b):
        _add_appointments(test_db_session, test_account, 2, datetime(2024, 1, 15, 17, 0))
        _add_appointments(test_db_session, test_account_b, 5, datetime(2024, 1, 15, 17, 0))

        result = MetricsEngine(test_db_session).calculate(
            MetricScope(account_id=test_account.id), "total_appointments", JANUARY
        )

        assert result.value == 2
        assert result.comparison is None

    def test_ratio_and_currency_metrics(self, test_db_session, test_account):
        when = datetime(2024, 1, 10, 18, 0)
        _add_appointments(test_db_session, test_account, 2, when, call_outcome=CallOutcomeEnum.show,
                          show_outcome=ShowOutcomeEnum.won, cash_collected=Decimal("1000.25"))
        _add_appointments(test_db_session, test_account, 2, when, call_outcome=CallOutcomeEnum.show,
                          show_outcome=ShowOutcomeEnum.lost)
        _add_appointments(test_db_session, test_account, 4, when, call_outcome=CallOutcomeEnum.no_show)
        engine = MetricsEngine(test_db_session)
        scope = MetricScope(account_id=test_account.id)

        show_rate = engine.calculate(scope, "show_rate", JANUARY)
        close_rate = engine.calculate(scope, "close_rate", JANUARY)
        revenue = engine.calculate(scope, "total_revenue", JANUARY)

        assert show_rate.value == pytest.approx(0.5)
        assert show_rate.display_value == "50.0%"
        assert close_rate.value == pytest.approx(0.5)
        assert revenue.value == pytest.approx(2000.50)
        assert revenue.display_value == "$2,000.50"

    def test_ratio_without_rows_is_zero(self, test_db_session, test_account):
        result = MetricsEngine(test_db_session).calculate(
            MetricScope(account_id=test_account.id), "answer_rate", JANUARY
        )

        assert result.value == 0
        assert result.display_value == "0.0%"

    def test_user_metric_scopes_to_role_column(self, test_db_session, test_account, rep_user, setter_user):
        when = datetime(2024, 1, 10, 18, 0)
        _add_appointments(test_db_session, test_account, 3, when, sales_rep_user_id=rep_user.id)
        _add_appointments(test_db_session, test_account, 2, when, setter_user_id=rep_user.id)
        engine = MetricsEngine(test_db_session)

        as_rep = engine.calculate(MetricScope(test_account.id, rep_user.id), "rep_appointments", JANUARY)
        other = engine.calculate(MetricScope(test_account.id, setter_user.id), "rep_appointments", JANUARY)

        assert as_rep.value == 3
        assert other.value == 0

    def test_rep_and_setter_filters(self, test_db_session, test_account, rep_user, setter_user):
        when = datetime(2024, 1, 10, 18, 0)
        _add_appointments(test_db_session, test_account, 2, when,
                          sales_rep_user_id=rep_user.id, setter_user_id=setter_user.id)
        _add_appointments(test_db_session, test_account, 3, when, sales_rep_user_id=rep_user.id)
        engine = MetricsEngine(test_db_session)
        scope = MetricScope(account_id=test_account.id)

        by_rep = engine.calculate(scope, "total_appointments", JANUARY, CalculateOptions(rep_ids=[rep_user.id]))
        by_setter = engine.calculate(
            scope, "total_appointments", JANUARY, CalculateOptions(setter_ids=[setter_user.id])
        )

        assert by_rep.value == 5
        assert by_setter.value == 2

    def test_dials_use_their_own_timestamp(self, test_db_session, test_account):
        dial = Dial(account_id=test_account.id, date_called=datetime(2024, 1, 1, 2, 0), answered=True)
        stamp_local_dates(dial, test_account.business_timezone)
        test_db_session.add(dial)
        test_db_session.commit()
        engine = MetricsEngine(test_db_session)
        scope = MetricScope(account_id=test_account.id)

        assert engine.calculate(scope, "total_dials", JANUARY).value == 0
        assert engine.calculate(scope, "total_dials", DECEMBER).value == 1
        assert engine.calculate(scope, "answer_rate", DECEMBER).display_value == "100.0%"


class TestValidation:

    def test_unknown_metric_fails_before_store_access(self):
        db = MagicMock()

        with pytest.raises(NotFoundError):
            MetricsEngine(db).calculate(MetricScope(account_id=uuid4()), "not_a_metric", JANUARY)

        assert db.method_calls == []

    def test_user_metric_requires_user(self):
        db = MagicMock()

        with pytest.raises(ValidationError):
            MetricsEngine(db).calculate(MetricScope(account_id=uuid4()), "rep_revenue", JANUARY)

        assert db.method_calls == []

    def test_missing_account_is_rejected(self):
        db = MagicMock()

        with pytest.raises(ValidationError):
            MetricsEngine(db).calculate(MetricScope(account_id=None), "total_dials", JANUARY)

        assert db.method_calls == []

    def test_reversed_range_is_rejected(self):
        db = MagicMock()

        with pytest.raises(ValidationError):
            MetricsEngine(db).calculate(
                MetricScope(account_id=uuid4()),
                "total_dials",
                DateRange(date(2024, 2, 1), date(2024, 1, 1)),
            )

        assert db.method_calls == []


class TestStoreFailures:

    def test_store_error_is_wrapped_in_compute_failed(self):
        db = MagicMock()
        store_error = OperationalError("SELECT count(*)", {}, Exception("connection reset"))
        db.query.side_effect = store_error

        with pytest.raises(ComputeFailed) as exc_info:
            MetricsEngine(db).calculate(MetricScope(account_id=uuid4()), "total_dials", JANUARY)

        assert exc_info.value.cause is store_error
        assert exc_info.value.__cause__ is store_error
        assert db.query.call_count == 1
        db.rollback.assert_called_once()


class TestBreakdown:

    def test_breakdown_groups_by_role_user(self, test_db_session, test_account, rep_user, member_factory):
        from salesmetrics.models import AccessRoleEnum

        other_rep = member_factory(test_account, "Rita Rep", AccessRoleEnum.sales_rep)
        when = datetime(2024, 1, 10, 18, 0)
        _add_appointments(test_db_session, test_account, 3, when, sales_rep_user_id=rep_user.id)
        _add_appointments(test_db_session, test_account, 1, when, sales_rep_user_id=other_rep.id)
        _add_appointments(test_db_session, test_account, 2, when, sales_rep="Not Yet Resolved")

        result = MetricsEngine(test_db_session).breakdown(
            MetricScope(account_id=test_account.id), "total_appointments", JANUARY, "sales_rep"
        )

        assert [(row.user_id, row.value) for row in result.rows] == [
            (rep_user.id, 3),
            (None, 2),
            (other_rep.id, 1),
        ]

    def test_breakdown_rejects_role_without_column(self, test_db_session, test_account):
        with pytest.raises(ValidationError):
            MetricsEngine(test_db_session).breakdown(
                MetricScope(account_id=test_account.id), "total_dials", JANUARY, "sales_rep"
            )
