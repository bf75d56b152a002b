"""
Attribution Linker
==================

WHAT:
    Links anonymous marketing sessions (attribution_sessions) to contacts
    under a tiered confidence model, keeps session touches up to date,
    purges expired sessions and aggregates distinct attribution values for
    dashboard filter dropdowns.

WHY:
    Ad spend is only attributable once a pre-contact session is tied to the
    contact it produced. Signals differ wildly in reliability, so every link
    carries the tier of the evidence that produced it.

Quality tiers (highest first):
    exact      click id match: fbclid, gclid, or the fbc+fbp pair, against
               the contact's first/last attribution snapshot
    utm        same (utm_source, utm_medium, utm_campaign) tuple, same account,
               contact created within a window around the session
    heuristic  same landing page or referrer (host + path), same window
    none       unlinked

Linking is compare-and-set on quality:
    - applied only if the proposed tier is strictly higher than the current
      one (an unlinked session has tier none)
    - once exact, contact_id never changes; an exact match to the same
      contact is a no-op and an exact match to another contact is rejected
      and logged
    - the UPDATE is guarded on the quality read, so concurrent links converge
    - linking sets linked_at only; last_activity_at and expires_at belong to
      tracking

REFERENCES:
    - salesmetrics/routers/attribution.py (track, link-contact, stats, options)
    - salesmetrics/workers/arq_worker.py (cleanup cron)
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesmetrics.errors import NotFoundError, ValidationError
from salesmetrics.models import (
    AttributionMethodEnum,
    AttributionQualityEnum,
    AttributionSession,
    Contact,
)
from salesmetrics.services.local_date_service import DEFAULT_BATCH_SIZE, BatchJobSummary
from salesmetrics.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 7
DEFAULT_UTM_WINDOW = timedelta(hours=72)
DEFAULT_OPTIONS_LIMIT = 200

QUALITY_RANK = {
    AttributionQualityEnum.none: 0,
    AttributionQualityEnum.heuristic: 1,
    AttributionQualityEnum.utm: 2,
    AttributionQualityEnum.exact: 3,
}

# Signal strength when recording how a session was tracked
METHOD_RANK = {
    AttributionMethodEnum.referrer_match: 0,
    AttributionMethodEnum.fingerprint_match: 1,
    AttributionMethodEnum.utm_direct: 2,
    AttributionMethodEnum.pixel_bridge: 3,
    AttributionMethodEnum.gclid_lookup: 4,
    AttributionMethodEnum.fbclid_lookup: 5,
}

TOUCH_FIELDS = (
    "fbclid", "gclid", "fbc", "fbp",
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term", "utm_id",
    "meta_campaign_id", "meta_ad_set_id", "meta_ad_id",
    "landing_url", "referrer_url", "fingerprint_id",
)

# Dashboard filter fields -> session column (None = contact snapshots only)
FILTER_OPTION_FIELDS = {
    "utm_source": "utm_source",
    "utm_medium": "utm_medium",
    "utm_campaign": "utm_campaign",
    "utm_content": "utm_content",
    "utm_term": "utm_term",
    "utm_id": "utm_id",
    "source_category": None,
    "specific_source": None,
    "session_source": None,
    "referrer": "referrer_url",
    "fbclid": "fbclid",
    "gclid": "gclid",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# =============================================================================
# MATCH EVALUATION
# =============================================================================

@dataclass(frozen=True)
class MatchResult:
    quality: AttributionQualityEnum
    method: Optional[AttributionMethodEnum] = None


NO_MATCH = MatchResult(AttributionQualityEnum.none)


def _snapshots(contact: Contact, session: AttributionSession) -> List[Dict[str, Any]]:
    """Contact snapshots usable as evidence for `session`.

    Snapshots written by linking this same session are skipped; they only echo
    the session's own values.
    """
    return [
        s for s in (contact.attribution_source, contact.last_attribution_source)
        if isinstance(s, dict) and s.get("session_id") != session.session_id
    ]


def _page_key(url: Optional[str]) -> Optional[str]:
    """host + path of a URL, lowercased, without query or trailing slash."""
    url = _clean(url)
    if not url:
        return None
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if not host:
        return None
    return f"{host}{parsed.path.rstrip('/').lower()}"


def _within_window(session: AttributionSession, contact: Contact, window: timedelta) -> bool:
    created = contact.crm_created_at or contact.created_at
    if created is None:
        return False
    start = (session.first_visit_at or session.last_activity_at) - window
    end = (session.last_activity_at or session.first_visit_at) + window
    return start <= created <= end


def evaluate_match(
    session: AttributionSession,
    contact: Contact,
    utm_window: timedelta = DEFAULT_UTM_WINDOW,
) -> MatchResult:
    """Return the strongest tier at which `session` matches `contact`."""
    if session.account_id != contact.account_id:
        return NO_MATCH

    snapshots = _snapshots(contact, session)

    for snap in snapshots:
        if session.fbclid and _clean(snap.get("fbclid")) == session.fbclid:
            return MatchResult(AttributionQualityEnum.exact, AttributionMethodEnum.fbclid_lookup)
        if session.gclid and _clean(snap.get("gclid")) == session.gclid:
            return MatchResult(AttributionQualityEnum.exact, AttributionMethodEnum.gclid_lookup)
        if (
            session.fbc and session.fbp
            and _clean(snap.get("fbc")) == session.fbc
            and _clean(snap.get("fbp")) == session.fbp
        ):
            return MatchResult(AttributionQualityEnum.exact, AttributionMethodEnum.pixel_bridge)

    if not _within_window(session, contact, utm_window):
        return NO_MATCH

    session_utm = (session.utm_source, session.utm_medium, session.utm_campaign)
    if session.utm_source and session.utm_campaign:
        for snap in snapshots:
            snap_utm = tuple(_clean(snap.get(k)) for k in ("utm_source", "utm_medium", "utm_campaign"))
            if snap_utm == session_utm:
                return MatchResult(AttributionQualityEnum.utm, AttributionMethodEnum.utm_direct)

    session_pages = {_page_key(session.landing_url), _page_key(session.referrer_url)} - {None}
    if session_pages:
        for snap in snapshots:
            snap_pages = {_page_key(snap.get("landing_url")), _page_key(snap.get("referrer"))} - {None}
            if session_pages & snap_pages:
                return MatchResult(AttributionQualityEnum.heuristic, AttributionMethodEnum.referrer_match)

    return NO_MATCH


# =============================================================================
# LINKING
# =============================================================================

def session_snapshot(session: AttributionSession) -> Dict[str, Any]:
    """Attribution snapshot stored on the contact for a linked session."""
    snap = {
        key: getattr(session, key)
        for key in TOUCH_FIELDS
        if key not in ("referrer_url", "fingerprint_id") and getattr(session, key)
    }
    if session.referrer_url:
        snap["referrer"] = session.referrer_url
    snap["session_id"] = session.session_id
    snap["quality"] = session.quality.value if session.quality else None
    snap["method"] = session.method.value if session.method else None
    return snap


def _enrich_contact(db: Session, contact: Contact, session: AttributionSession) -> None:
    snap = session_snapshot(session)
    if not contact.attribution_source:
        contact.attribution_source = dict(snap)
    previous = contact.last_attribution_source
    if isinstance(previous, dict) and "session_id" not in previous:
        # CRM-recorded values the session lacks (e.g. a gclid) are kept
        snap = {**previous, **snap}
    contact.last_attribution_source = snap
    db.add(contact)


def link(
    db: Session,
    session: AttributionSession,
    contact: Contact,
    utm_window: timedelta = DEFAULT_UTM_WINDOW,
) -> AttributionSession:
    """Establish or upgrade the link between `session` and `contact`.

    Never downgrades. Returns the (refreshed) session.
    """
    match = evaluate_match(session, contact, utm_window)
    if match.quality == AttributionQualityEnum.none:
        logger.debug("[ATTRIBUTION] No match between session %s and contact %s", session.session_id, contact.id)
        return session

    current = session.quality or AttributionQualityEnum.none

    if current == AttributionQualityEnum.exact and session.contact_id is not None:
        if match.quality == AttributionQualityEnum.exact and session.contact_id != contact.id:
            logger.warning(
                "[ATTRIBUTION] Rejected conflicting exact match: session %s is linked to %s, proposed %s",
                session.session_id, session.contact_id, contact.id,
            )
            capture_message(
                "Conflicting exact attribution match rejected",
                level="warning",
                extra={
                    "session_id": session.session_id,
                    "linked_contact_id": str(session.contact_id),
                    "proposed_contact_id": str(contact.id),
                },
            )
        return session

    if QUALITY_RANK[match.quality] <= QUALITY_RANK[current]:
        return session

    now = _utcnow()
    result = db.execute(
        update(AttributionSession)
        .where(
            AttributionSession.id == session.id,
            AttributionSession.quality == current,
        )
        .values(
            contact_id=contact.id,
            quality=match.quality,
            method=match.method,
            linked_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        # Another writer moved the session first; keep its outcome
        db.refresh(session)
        logger.info("[ATTRIBUTION] Session %s changed concurrently, link skipped", session.session_id)
        return session

    db.refresh(session)
    _enrich_contact(db, contact, session)
    db.commit()
    db.refresh(session)

    logger.info(
        "[ATTRIBUTION] Linked session %s -> contact %s (%s -> %s via %s)",
        session.session_id, contact.id, current.value, match.quality.value, match.method.value,
    )
    return session


def link_contact(
    db: Session,
    account_id: UUID,
    session_id: str,
    contact_id: UUID,
    utm_window: timedelta = DEFAULT_UTM_WINDOW,
) -> AttributionSession:
    """Load a session and contact of one account and link them."""
    session = (
        db.query(AttributionSession)
        .filter(AttributionSession.session_id == session_id, AttributionSession.account_id == account_id)
        .first()
    )
    if not session:
        raise NotFoundError("Attribution session not found", details={"session_id": session_id})

    contact = (
        db.query(Contact)
        .filter(Contact.id == contact_id, Contact.account_id == account_id)
        .first()
    )
    if not contact:
        raise NotFoundError("Contact not found", details={"contact_id": str(contact_id)})

    return link(db, session, contact, utm_window)


# =============================================================================
# TRACKING
# =============================================================================

def detect_method(values: Dict[str, Any]) -> Optional[AttributionMethodEnum]:
    """Strongest tracking signal present in a touch payload."""
    if _clean(values.get("fbclid")):
        return AttributionMethodEnum.fbclid_lookup
    if _clean(values.get("gclid")):
        return AttributionMethodEnum.gclid_lookup
    if _clean(values.get("fbc")) and _clean(values.get("fbp")):
        return AttributionMethodEnum.pixel_bridge
    if _clean(values.get("utm_source")):
        return AttributionMethodEnum.utm_direct
    if _clean(values.get("fingerprint_id")):
        return AttributionMethodEnum.fingerprint_match
    if _clean(values.get("referrer_url")) or _clean(values.get("landing_url")):
        return AttributionMethodEnum.referrer_match
    return None


def track_touch(
    db: Session,
    account_id: UUID,
    session_id: str,
    values: Dict[str, Any],
    ttl_days: int = DEFAULT_TTL_DAYS,
    now: Optional[datetime] = None,
) -> AttributionSession:
    """Create or update a session from a tracking touch (upsert on session_id).

    First non-empty values win for click ids and UTMs; `last_activity_at`
    moves forward and `expires_at` is pushed to last activity + TTL.
    Quality is left alone: only `link` changes it.
    """
    session_id = _clean(session_id)
    if not session_id:
        raise ValidationError("session_id is required")

    now = now or _utcnow()
    cleaned = {key: _clean(values.get(key)) for key in TOUCH_FIELDS}

    session = _find_session(db, account_id, session_id)
    created = session is None
    if created:
        session = AttributionSession(
            session_id=session_id,
            account_id=account_id,
            quality=AttributionQualityEnum.none,
            first_visit_at=now,
        )
        db.add(session)
    _apply_touch(session, cleaned, now, ttl_days)

    try:
        db.commit()
    except IntegrityError:
        if not created:
            raise
        # Concurrent first touch inserted the row; merge into it
        db.rollback()
        logger.info("[ATTRIBUTION] Session %s created concurrently, merging touch", session_id)
        session = _find_session(db, account_id, session_id)
        if session is None:
            raise
        _apply_touch(session, cleaned, now, ttl_days)
        db.commit()

    db.refresh(session)
    return session


def _find_session(db: Session, account_id: UUID, session_id: str) -> Optional[AttributionSession]:
    session = db.query(AttributionSession).filter(AttributionSession.session_id == session_id).first()
    if session is not None and session.account_id != account_id:
        raise ValidationError("session_id belongs to another account")
    return session


def _apply_touch(
    session: AttributionSession,
    cleaned: Dict[str, Optional[str]],
    now: datetime,
    ttl_days: int,
) -> None:
    for key, value in cleaned.items():
        if value and not getattr(session, key):
            setattr(session, key, value)

    method = detect_method(cleaned)
    if method and (session.method is None or METHOD_RANK[method] > METHOD_RANK[session.method]):
        session.method = method

    if session.last_activity_at is None or now > session.last_activity_at:
        session.last_activity_at = now
    session.expires_at = session.last_activity_at + timedelta(days=ttl_days)


# =============================================================================
# CLEANUP & STATISTICS
# =============================================================================

@dataclass
class SessionStats:
    total_active_sessions: int = 0
    linked_sessions: int = 0
    unlinked_sessions: int = 0
    quality_breakdown: Dict[str, int] = field(default_factory=dict)
    method_breakdown: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_active_sessions": self.total_active_sessions,
            "linked_sessions": self.linked_sessions,
            "unlinked_sessions": self.unlinked_sessions,
            "quality_breakdown": dict(self.quality_breakdown),
            "method_breakdown": dict(self.method_breakdown),
        }


@dataclass
class CleanupResult(BatchJobSummary):
    stats: SessionStats = field(default_factory=SessionStats)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["deleted"] = self.succeeded
        payload["stats"] = self.stats.to_dict()
        return payload


def session_stats(db: Session, account_id: Optional[UUID] = None) -> SessionStats:
    """Aggregate counts over sessions, optionally for one account."""

    def scoped(query):
        if account_id is not None:
            query = query.filter(AttributionSession.account_id == account_id)
        return query

    stats = SessionStats()
    stats.total_active_sessions = scoped(db.query(func.count(AttributionSession.id))).scalar() or 0
    stats.linked_sessions = (
        scoped(db.query(func.count(AttributionSession.id)))
        .filter(AttributionSession.contact_id.isnot(None))
        .scalar()
        or 0
    )
    stats.unlinked_sessions = stats.total_active_sessions - stats.linked_sessions

    quality = Counter({q.value: 0 for q in AttributionQualityEnum})
    for tier, count in scoped(
        db.query(AttributionSession.quality, func.count(AttributionSession.id))
    ).group_by(AttributionSession.quality):
        quality[tier.value if tier else AttributionQualityEnum.none.value] += count
    stats.quality_breakdown = dict(quality)

    methods: Counter = Counter()
    for method, count in scoped(
        db.query(AttributionSession.method, func.count(AttributionSession.id))
    ).group_by(AttributionSession.method):
        methods[method.value if method else "unknown"] += count
    stats.method_breakdown = dict(methods)

    return stats


def cleanup_expired(
    db: Session,
    now: Optional[datetime] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> CleanupResult:
    """Delete sessions past `expires_at` in batches and report what remains.

    Statistics are for observability only.
    """
    now = now or _utcnow()
    result = CleanupResult()
    last_id = None
    batch_number = 0

    while True:
        query = db.query(AttributionSession.id).filter(AttributionSession.expires_at < now)
        if last_id is not None:
            query = query.filter(AttributionSession.id > last_id)
        ids = [row.id for row in query.order_by(AttributionSession.id).limit(batch_size).all()]
        if not ids:
            break

        batch_number += 1
        last_id = ids[-1]
        batch_key = f"attribution_sessions:{batch_number}"
        result.processed += len(ids)

        try:
            db.query(AttributionSession).filter(AttributionSession.id.in_(ids)).delete(synchronize_session=False)
            db.commit()
            result.succeeded += len(ids)
        except SQLAlchemyError as e:
            db.rollback()
            result.failed += len(ids)
            result.reasons.append({"batch": batch_key, "error": str(e)})
            logger.exception("[ATTRIBUTION] Cleanup batch %s failed", batch_key)
            capture_exception(e, extra={"batch": batch_key})

        if len(ids) < batch_size:
            break

    result.stats = session_stats(db)
    logger.info(
        "[ATTRIBUTION] Cleanup removed %s expired session(s); active=%s linked=%s unlinked=%s",
        result.succeeded,
        result.stats.total_active_sessions,
        result.stats.linked_sessions,
        result.stats.unlinked_sessions,
    )
    return result


# =============================================================================
# FILTER OPTIONS
# =============================================================================

def aggregate_filter_options(
    db: Session,
    account_id: UUID,
    limit: int = DEFAULT_OPTIONS_LIMIT,
) -> Dict[str, List[str]]:
    """Distinct attribution values for dashboard filters.

    Unions session columns with values found in contacts' first/last
    attribution snapshots. Each list is deduplicated, sorted and capped at
    `limit` entries.
    """
    values: Dict[str, set] = {name: set() for name in FILTER_OPTION_FIELDS}

    for name, column_name in FILTER_OPTION_FIELDS.items():
        if column_name is None:
            continue
        column = getattr(AttributionSession, column_name)
        rows = (
            db.query(column)
            .filter(AttributionSession.account_id == account_id, column.isnot(None))
            .distinct()
            .all()
        )
        values[name].update(v for (v,) in rows if _clean(v))

    snapshot_rows = (
        db.query(Contact.attribution_source, Contact.last_attribution_source)
        .filter(Contact.account_id == account_id)
        .yield_per(1000)
    )
    for first, last in snapshot_rows:
        for snap in (first, last):
            if not isinstance(snap, dict):
                continue
            for name in FILTER_OPTION_FIELDS:
                value = _clean(snap.get(name))
                if value:
                    values[name].add(value)

    return {name: sorted(found)[:limit] for name, found in values.items()}
