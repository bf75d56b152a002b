"""
Local Date Service
==================

WHAT:
    Converts UTC instants into an account's business-local calendar buckets
    (local_date, local_week, local_month) and re-derives those buckets for all
    historical rows when an account's timezone changes.

WHY:
    Every metric filters on `local_date`, never on the raw UTC timestamp.
    A call at 2024-03-10T04:30Z belongs to March 9th for a New York account,
    so bucketing has to happen in the account's own zone before any range
    filter is applied.

Bucket rules:
    local_date   calendar date of the instant rendered in the IANA zone
    local_week   Monday of that week (Sunday counts as day 7)
    local_month  first day of that month

    Naive datetimes are treated as UTC. Results never depend on the server's
    own timezone.

REFERENCES:
    - salesmetrics/services/metrics_engine.py (consumer of local_date)
    - salesmetrics/routers/accounts.py (timezone update -> recompute job)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salesmetrics.errors import ValidationError
from salesmetrics.models import BUCKETED_MODELS
from salesmetrics.telemetry import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500

Timestamp = Union[datetime, str]


@dataclass(frozen=True)
class LocalBuckets:
    """Local calendar buckets of one instant."""
    local_date: date
    local_week: date
    local_month: date

    def as_dict(self) -> Dict[str, str]:
        return {
            "local_date": self.local_date.isoformat(),
            "local_week": self.local_week.isoformat(),
            "local_month": self.local_month.isoformat(),
        }


@dataclass
class BatchJobSummary:
    """Result of a batch job. Shared by recompute, backfill and cleanup."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    reasons: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "reasons": list(self.reasons),
        }


# =============================================================================
# PURE NORMALIZATION
# =============================================================================

def get_zone(tz_name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name or raise ValidationError."""
    if not tz_name or not isinstance(tz_name, str):
        raise ValidationError("Timezone is required")
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {tz_name}", details={"timezone": tz_name}) from exc


def is_valid_timezone(tz_name: str) -> bool:
    try:
        get_zone(tz_name)
    except ValidationError:
        return False
    return True


def to_utc(timestamp: Timestamp) -> datetime:
    """Coerce a datetime or ISO-8601 string into an aware UTC datetime.

    Naive values (and strings without an offset) are taken as UTC.
    """
    if isinstance(timestamp, str):
        raw = timestamp.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            timestamp = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp: {timestamp!r}") from exc

    if not isinstance(timestamp, datetime):
        raise ValidationError(f"Invalid timestamp: {timestamp!r}")

    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def week_start(day: date) -> date:
    """Monday of the week containing `day`. Sunday is day 7, not day 0."""
    return day - timedelta(days=day.isoweekday() - 1)


def month_start(day: date) -> date:
    return day.replace(day=1)


def normalize(timestamp: Timestamp, tz_name: str) -> LocalBuckets:
    """Bucket a UTC instant into local calendar buckets for `tz_name`.

    Example:
        >>> normalize("2024-03-10T04:30:00Z", "America/New_York").local_date
        datetime.date(2024, 3, 9)
    """
    zone = get_zone(tz_name)
    local_day = to_utc(timestamp).astimezone(zone).date()
    return LocalBuckets(
        local_date=local_day,
        local_week=week_start(local_day),
        local_month=month_start(local_day),
    )


def stamp_local_dates(record: Any, tz_name: str) -> Optional[LocalBuckets]:
    """Write local buckets onto an ORM row from its own timestamp column.

    Used at ingestion and by the recompute job. Rows without a timestamp get
    their buckets cleared.
    """
    value = getattr(record, record.timestamp_field)
    if value is None:
        record.local_date = None
        record.local_week = None
        record.local_month = None
        return None

    buckets = normalize(value, tz_name)
    record.local_date = buckets.local_date
    record.local_week = buckets.local_week
    record.local_month = buckets.local_month
    return buckets


# =============================================================================
# BATCH RECOMPUTE
# =============================================================================

def recompute_for_account(
    db: Session,
    account_id: UUID,
    tz_name: str,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> BatchJobSummary:
    """Re-derive local buckets for every bucketed row of an account.

    WHAT:
        Walks dials, appointments, discoveries and contacts in fixed-size
        batches (keyset on primary key), restamping and committing each batch.

    WHY:
        Runs after an account's business timezone changes. Each batch is its
        own transaction: a failed batch is rolled back, logged with its batch
        key and counted, then the job moves on.

    Raises:
        ValidationError: timezone is unknown (before any store access)
    """
    get_zone(tz_name)
    summary = BatchJobSummary()

    for model in BUCKETED_MODELS:
        table = model.__tablename__
        last_id = None
        batch_number = 0

        while True:
            query = db.query(model).filter(model.account_id == account_id)
            if last_id is not None:
                query = query.filter(model.id > last_id)
            rows = query.order_by(model.id).limit(batch_size).all()
            if not rows:
                break

            batch_number += 1
            last_id = rows[-1].id
            batch_key = f"{table}:{batch_number}"
            summary.processed += len(rows)

            try:
                for row in rows:
                    stamp_local_dates(row, tz_name)
                db.commit()
                summary.succeeded += len(rows)
            except (SQLAlchemyError, ValidationError) as e:
                db.rollback()
                summary.failed += len(rows)
                summary.reasons.append({"batch": batch_key, "error": str(e)})
                logger.exception("[LOCAL_DATE] Batch %s failed for account %s", batch_key, account_id)
                capture_exception(e, extra={"account_id": str(account_id), "batch": batch_key})

            if len(rows) < batch_size:
                break

    logger.info(
        "[LOCAL_DATE] Recomputed account %s (%s): processed=%s succeeded=%s failed=%s",
        account_id, tz_name, summary.processed, summary.succeeded, summary.failed,
    )
    return summary
