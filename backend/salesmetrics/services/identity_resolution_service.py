"""
Identity Resolution Service
===========================

WHAT:
    Maps the free-text setter / sales rep names (and optional CRM-side user
    ids) that ingestion writes onto activity rows into platform user ids.

WHY:
    CRM webhooks send "whatever string the rep typed". Metrics scoped to a
    user (and every per-rep breakdown) need a stable `*_user_id`.

Matching precedence for one record and role:
    1. CRM user id supplied by ingestion that maps onto a platform user
       (crm_users.user_id) -> Resolved(via="crm_user_id")
    2. Case-insensitive exact match of the name against active account
       members' display names -> Resolved(via="name")
       Several members with that name: the one most recently seen on an
       already-resolved record with the same name wins; if none (or a tie)
       -> Ambiguous(candidates)
    3. Otherwise -> Unresolved(reason)

Writes are fill-only: a non-null `*_user_id` is never overwritten, and the
UPDATE itself is guarded with `IS NULL` so concurrent backfills converge.

REFERENCES:
    - salesmetrics/access.py: active_members (AccountAccess)
    - salesmetrics/routers/team.py: candidates, backfill, role proposals
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from salesmetrics.access import active_members
from salesmetrics.errors import AmbiguousMatch, NotFoundError, ValidationError
from salesmetrics.models import (
    AccessRoleEnum,
    ACTIVITY_MODELS,
    Appointment,
    CrmUser,
    Dial,
    Discovery,
    User,
)
from salesmetrics.services.local_date_service import DEFAULT_BATCH_SIZE, BatchJobSummary
from salesmetrics.telemetry import capture_exception

logger = logging.getLogger(__name__)

SETTER = "setter"
SALES_REP = "sales_rep"
ROLES = (SETTER, SALES_REP)

# Roles allowed to appear as each activity role; admins cover both
INVITED_ROLES = {
    SETTER: {AccessRoleEnum.setter, AccessRoleEnum.admin},
    SALES_REP: {AccessRoleEnum.sales_rep, AccessRoleEnum.admin},
}

# Declared roles the reclassification heuristic never touches
EXEMPT_ROLES = {AccessRoleEnum.admin, AccessRoleEnum.moderator}

# CRM role strings -> platform roles
CRM_ROLE_ALIASES = {
    "rep": AccessRoleEnum.sales_rep,
    "sales_rep": AccessRoleEnum.sales_rep,
    "salesrep": AccessRoleEnum.sales_rep,
    "closer": AccessRoleEnum.sales_rep,
    "setter": AccessRoleEnum.setter,
    "moderator": AccessRoleEnum.moderator,
    "admin": AccessRoleEnum.admin,
    "owner": AccessRoleEnum.admin,
    "manager": AccessRoleEnum.admin,
    "team_lead": AccessRoleEnum.admin,
    "lead": AccessRoleEnum.admin,
    "leader": AccessRoleEnum.admin,
}


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class Resolved:
    user_id: UUID
    via: str  # "existing" | "crm_user_id" | "name"


@dataclass(frozen=True)
class Ambiguous:
    candidates: Tuple[UUID, ...]


@dataclass(frozen=True)
class Unresolved:
    reason: str  # "no_name" | "no_match"


Resolution = Union[Resolved, Ambiguous, Unresolved]


@dataclass(frozen=True)
class Candidate:
    """A person observed in (or invited for) a role.

    `id` is None for free-text names never mapped onto a platform user.
    """
    id: Optional[UUID]
    name: str
    role: str
    invited: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id) if self.id else None,
            "name": self.name,
            "role": "rep" if self.role == SALES_REP else "setter",
            "invited": self.invited,
        }


@dataclass
class CandidateSet:
    invited: List[Candidate] = field(default_factory=list)
    uninvited: List[Candidate] = field(default_factory=list)


@dataclass
class BackfillReport(BatchJobSummary):
    ambiguous: int = 0
    unresolved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["ambiguous"] = self.ambiguous
        payload["unresolved"] = self.unresolved
        return payload


@dataclass(frozen=True)
class RoleProposal:
    """A suggested AccountAccess role change. Never applied automatically."""
    user_id: UUID
    name: str
    declared_role: AccessRoleEnum
    proposed_role: AccessRoleEnum
    setter_count: int
    sales_rep_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": str(self.user_id),
            "name": self.name,
            "declared_role": self.declared_role.value,
            "proposed_role": self.proposed_role.value,
            "setter_count": self.setter_count,
            "sales_rep_count": self.sales_rep_count,
        }


# =============================================================================
# HELPERS
# =============================================================================

def normalize_name(name: Optional[str]) -> str:
    return " ".join((name or "").split()).lower()


def normalize_role(raw: Optional[str]) -> Optional[AccessRoleEnum]:
    """Map a CRM role string onto a platform role, or None if unknown."""
    key = normalize_name(raw).replace(" ", "_").replace("-", "_")
    return CRM_ROLE_ALIASES.get(key)


def display_name(user: Optional[User]) -> str:
    if user is None:
        return "Unknown"
    return user.full_name or user.email or "Unknown"


def _role_columns(model, role: str):
    """Return (name, crm_id, user_id) columns for a role, or None if absent."""
    if not hasattr(model, f"{role}_user_id"):
        return None
    return (
        getattr(model, role),
        getattr(model, f"crm_{role}_user_id"),
        getattr(model, f"{role}_user_id"),
    )


def _models_for_role(role: str):
    return [m for m in ACTIVITY_MODELS if _role_columns(m, role) is not None]


# =============================================================================
# RESOLVER
# =============================================================================

class IdentityResolver:
    """Resolves activity row assignees for one account.

    Active membership and the CRM id map are loaded once per instance, so a
    resolver is cheap to reuse across a whole backfill run. Build a new one to
    observe AccountAccess changes.
    """

    def __init__(self, db: Session, account_id: UUID):
        self.db = db
        self.account_id = account_id

        self._members_by_name: Dict[str, List[UUID]] = defaultdict(list)
        for access in active_members(db, account_id):
            key = normalize_name(access.user.full_name)
            if key and access.user_id not in self._members_by_name[key]:
                self._members_by_name[key].append(access.user_id)

        self._crm_map: Dict[str, UUID] = {
            crm_user_id: user_id
            for crm_user_id, user_id in (
                db.query(CrmUser.crm_user_id, CrmUser.user_id)
                .filter(CrmUser.account_id == account_id, CrmUser.user_id.isnot(None))
                .all()
            )
        }

    def resolve(self, record: Any, role: str) -> Resolution:
        """Resolve the assignee of `record` for `role` without writing."""
        columns = _role_columns(type(record), role)
        if columns is None:
            return Unresolved(reason="no_role_column")

        existing = getattr(record, f"{role}_user_id")
        if existing is not None:
            return Resolved(user_id=existing, via="existing")

        return self.resolve_values(getattr(record, role), getattr(record, f"crm_{role}_user_id"), role)

    def resolve_values(self, name: Optional[str], crm_user_id: Optional[str], role: str) -> Resolution:
        if crm_user_id and crm_user_id in self._crm_map:
            return Resolved(user_id=self._crm_map[crm_user_id], via="crm_user_id")
        return self.resolve_name(name, role)

    def resolve_name(self, name: Optional[str], role: str) -> Resolution:
        key = normalize_name(name)
        if not key:
            return Unresolved(reason="no_name")

        matches = self._members_by_name.get(key, [])
        if not matches:
            return Unresolved(reason="no_match")
        if len(matches) == 1:
            return Resolved(user_id=matches[0], via="name")

        winner = self._most_recent_match(key, role, matches)
        if winner is not None:
            return Resolved(user_id=winner, via="name")
        return Ambiguous(candidates=tuple(matches))

    def _most_recent_match(self, key: str, role: str, user_ids: List[UUID]) -> Optional[UUID]:
        """Pick the user most recently resolved for this name, if unique."""
        latest: Dict[UUID, datetime] = {}
        for model in _models_for_role(role):
            name_col, _, user_col = _role_columns(model, role)
            ts_col = getattr(model, model.timestamp_field)
            # Grouped by raw name; names are compared after whitespace collapsing
            rows = (
                self.db.query(name_col, user_col, func.max(ts_col))
                .filter(
                    model.account_id == self.account_id,
                    name_col.isnot(None),
                    user_col.in_(user_ids),
                )
                .group_by(name_col, user_col)
                .all()
            )
            for name, user_id, seen_at in rows:
                if normalize_name(name) != key:
                    continue
                if seen_at is not None and (user_id not in latest or seen_at > latest[user_id]):
                    latest[user_id] = seen_at

        if not latest:
            return None
        ranked = sorted(latest.items(), key=lambda item: item[1], reverse=True)
        if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
            return None
        return ranked[0][0]

    def fill(self, record: Any, role: str) -> Resolution:
        """Resolve and write the user id if the column is still null."""
        outcome = self.resolve(record, role)
        if isinstance(outcome, Resolved) and outcome.via != "existing":
            model = type(record)
            user_col = getattr(model, f"{role}_user_id")
            self.db.execute(
                update(model)
                .where(model.id == record.id, user_col.is_(None))
                .values({f"{role}_user_id": outcome.user_id})
                .execution_options(synchronize_session=False)
            )
        return outcome


# =============================================================================
# CANDIDATES
# =============================================================================

def _observed_pairs(db: Session, account_id: UUID, role: str) -> List[Tuple[Optional[str], Optional[UUID]]]:
    pairs = set()
    for model in _models_for_role(role):
        name_col, _, user_col = _role_columns(model, role)
        rows = (
            db.query(name_col, user_col)
            .filter(model.account_id == account_id)
            .filter((name_col.isnot(None)) | (user_col.isnot(None)))
            .distinct()
            .all()
        )
        pairs.update(rows)
    return sorted(pairs, key=lambda p: (normalize_name(p[0]), str(p[1] or "")))


def resolve_candidates(db: Session, account_id: UUID) -> Dict[str, CandidateSet]:
    """Partition everyone who has acted as setter / sales rep into invited and uninvited.

    Invited candidates are active members holding a matching role (admins
    count for both roles), whether or not they have activity yet. Observed
    (name, user id) pairs that match no invited member by id or by
    case-insensitive name are uninvited.
    """
    members = active_members(db, account_id)
    result: Dict[str, CandidateSet] = {}

    for role in ROLES:
        candidate_set = CandidateSet()
        invited_ids = set()
        invited_names = set()

        for access in members:
            if access.role not in INVITED_ROLES[role]:
                continue
            invited_ids.add(access.user_id)
            invited_names.add(normalize_name(access.user.full_name))
            candidate_set.invited.append(
                Candidate(id=access.user_id, name=display_name(access.user), role=role, invited=True)
            )

        seen_ids = set()
        seen_names = set()
        # Pairs carrying a user id first, so a bare name of the same person folds into it
        observed = sorted(_observed_pairs(db, account_id, role), key=lambda p: p[1] is None)
        for name, user_id in observed:
            name_key = normalize_name(name)
            if user_id in invited_ids or name_key in invited_names:
                continue
            if user_id is not None:
                if user_id in seen_ids:
                    continue
                seen_ids.add(user_id)
            elif not name_key or name_key in seen_names:
                continue
            if name_key:
                seen_names.add(name_key)
            label = name.strip() if name and name.strip() else display_name(db.get(User, user_id) if user_id else None)
            candidate_set.uninvited.append(Candidate(id=user_id, name=label, role=role, invited=False))

        candidate_set.invited.sort(key=lambda c: c.name.lower())
        result[role] = candidate_set

    return result


def get_candidates(db: Session, account_id: UUID) -> Dict[str, List[Dict[str, Any]]]:
    """Dashboard shape: {reps: [...], setters: [...]}."""
    sets = resolve_candidates(db, account_id)
    return {
        "reps": [c.to_dict() for c in sets[SALES_REP].invited + sets[SALES_REP].uninvited],
        "setters": [c.to_dict() for c in sets[SETTER].invited + sets[SETTER].uninvited],
    }


def resolve_user(
    db: Session,
    account_id: UUID,
    role: str,
    name: Optional[str] = None,
    crm_user_id: Optional[str] = None,
) -> Resolved:
    """Resolve one (name, CRM id) pair for ingestion previews.

    Raises:
        ValidationError: unknown role
        AmbiguousMatch: several members share the name with no recent winner
        NotFoundError: nothing matched
    """
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}", details={"role": role})

    outcome = IdentityResolver(db, account_id).resolve_values(name, crm_user_id, role)
    if isinstance(outcome, Ambiguous):
        raise AmbiguousMatch(
            f"Several members match '{name}'",
            candidates=outcome.candidates,
            details={"candidates": [str(c) for c in outcome.candidates]},
        )
    if isinstance(outcome, Unresolved):
        raise NotFoundError("No member matches", details={"name": name, "reason": outcome.reason})
    return outcome


# =============================================================================
# BACKFILL
# =============================================================================

def backfill(db: Session, account_id: UUID, batch_size: int = DEFAULT_BATCH_SIZE) -> BackfillReport:
    """Fill every null `*_user_id` of an account that can be resolved.

    Idempotent: re-running after new members are invited picks up rows that
    were previously unresolved and leaves everything else untouched.
    Ambiguous and unresolved rows are reported, never raised.
    """
    resolver = IdentityResolver(db, account_id)
    report = BackfillReport()

    for role in ROLES:
        for model in _models_for_role(role):
            _, _, user_col = _role_columns(model, role)
            table = model.__tablename__
            last_id = None
            batch_number = 0

            while True:
                query = db.query(model).filter(model.account_id == account_id, user_col.is_(None))
                if last_id is not None:
                    query = query.filter(model.id > last_id)
                rows = query.order_by(model.id).limit(batch_size).all()
                if not rows:
                    break

                batch_number += 1
                last_id = rows[-1].id
                batch_key = f"{table}.{role}:{batch_number}"
                report.processed += len(rows)

                try:
                    outcomes = [(row.id, resolver.fill(row, role)) for row in rows]
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    report.failed += len(rows)
                    report.reasons.append({"batch": batch_key, "reason": "store_error", "error": str(e)})
                    logger.exception("[IDENTITY] Backfill batch %s failed for account %s", batch_key, account_id)
                    capture_exception(e, extra={"account_id": str(account_id), "batch": batch_key})
                else:
                    _tally(report, table, role, outcomes)

                if len(rows) < batch_size:
                    break

    logger.info(
        "[IDENTITY] Backfill account %s: processed=%s succeeded=%s ambiguous=%s unresolved=%s failed=%s",
        account_id, report.processed, report.succeeded, report.ambiguous, report.unresolved, report.failed,
    )
    return report


def _tally(report: BackfillReport, table: str, role: str, outcomes: Iterable[Tuple[UUID, Resolution]]) -> None:
    for record_id, outcome in outcomes:
        if isinstance(outcome, Resolved):
            report.succeeded += 1
            continue

        entry = {"table": table, "record_id": str(record_id), "role": role}
        if isinstance(outcome, Ambiguous):
            report.ambiguous += 1
            entry["reason"] = "ambiguous_name"
            entry["candidates"] = [str(c) for c in outcome.candidates]
        else:
            report.unresolved += 1
            entry["reason"] = outcome.reason
        report.reasons.append(entry)


# =============================================================================
# ROLE RECLASSIFICATION
# =============================================================================

def _role_counts(db: Session, account_id: UUID, role: str) -> Dict[UUID, int]:
    counts: Dict[UUID, int] = defaultdict(int)
    for model in _models_for_role(role):
        _, _, user_col = _role_columns(model, role)
        rows = (
            db.query(user_col, func.count(model.id))
            .filter(model.account_id == account_id, user_col.isnot(None))
            .group_by(user_col)
            .all()
        )
        for user_id, count in rows:
            counts[user_id] += count
    return counts


def reclassify_roles(db: Session, account_id: UUID) -> List[RoleProposal]:
    """Propose role corrections from observed activity. Applies nothing.

    A setter/sales_rep member whose rows as one role outnumber their rows as
    the other, while declared as the other, gets a proposal. Equal counts and
    members without activity produce no proposal. Admins and moderators are
    exempt.
    """
    setter_counts = _role_counts(db, account_id, SETTER)
    rep_counts = _role_counts(db, account_id, SALES_REP)
    proposals: List[RoleProposal] = []

    for access in active_members(db, account_id):
        if access.role in EXEMPT_ROLES:
            continue

        as_setter = setter_counts.get(access.user_id, 0)
        as_rep = rep_counts.get(access.user_id, 0)
        if as_rep > as_setter:
            observed = AccessRoleEnum.sales_rep
        elif as_setter > as_rep:
            observed = AccessRoleEnum.setter
        else:
            continue

        if observed != access.role:
            proposals.append(
                RoleProposal(
                    user_id=access.user_id,
                    name=display_name(access.user),
                    declared_role=access.role,
                    proposed_role=observed,
                    setter_count=as_setter,
                    sales_rep_count=as_rep,
                )
            )

    logger.info("[IDENTITY] Role review for account %s: %s proposal(s)", account_id, len(proposals))
    return proposals


# =============================================================================
# PENDING CRM USERS
# =============================================================================

def refresh_crm_user_activity(db: Session, account_id: UUID) -> int:
    """Recount appointment/dial/discovery activity for each CRM user.

    Activity is matched on the CRM user id recorded by ingestion in either
    role column. Also refreshes `is_invited` from current membership.

    Returns:
        Number of crm_users rows updated
    """
    crm_users = db.query(CrmUser).filter(CrmUser.account_id == account_id).all()
    if not crm_users:
        return 0

    member_ids = {access.user_id for access in active_members(db, account_id)}
    counters = {Dial: "dial_count", Appointment: "appointment_count", Discovery: "discovery_count"}
    tallies: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"last": None})

    for model, counter in counters.items():
        ts_col = getattr(model, model.timestamp_field)
        for role in ROLES:
            columns = _role_columns(model, role)
            if columns is None:
                continue
            _, crm_col, _ = columns
            rows = (
                db.query(crm_col, func.count(model.id), func.max(ts_col))
                .filter(model.account_id == account_id, crm_col.isnot(None))
                .group_by(crm_col)
                .all()
            )
            for crm_id, count, last_seen in rows:
                tally = tallies[crm_id]
                tally[counter] = tally.get(counter, 0) + count
                if last_seen is not None and (tally["last"] is None or last_seen > tally["last"]):
                    tally["last"] = last_seen

    for crm_user in crm_users:
        tally = tallies.get(crm_user.crm_user_id, {"last": None})
        crm_user.dial_count = tally.get("dial_count", 0)
        crm_user.appointment_count = tally.get("appointment_count", 0)
        crm_user.discovery_count = tally.get("discovery_count", 0)
        crm_user.last_activity_at = tally["last"]
        crm_user.is_invited = crm_user.user_id is not None and crm_user.user_id in member_ids

    db.commit()
    return len(crm_users)


def pending_crm_users(db: Session, account_id: UUID) -> List[Dict[str, Any]]:
    """CRM users with activity who have not been invited, most active first."""
    rows = (
        db.query(CrmUser)
        .filter(CrmUser.account_id == account_id, CrmUser.is_invited.is_(False))
        .all()
    )
    pending = []
    for crm_user in rows:
        activity = crm_user.appointment_count + crm_user.dial_count + crm_user.discovery_count
        if activity == 0:
            continue
        suggested = normalize_role(crm_user.role)
        pending.append({
            "crm_user_id": crm_user.crm_user_id,
            "name": crm_user.name or crm_user.email or "Unknown",
            "email": crm_user.email,
            "suggested_role": suggested.value if suggested else None,
            "appointment_count": crm_user.appointment_count,
            "dial_count": crm_user.dial_count,
            "discovery_count": crm_user.discovery_count,
            "total_activity": activity,
            "last_activity_at": crm_user.last_activity_at.isoformat() if crm_user.last_activity_at else None,
        })
    pending.sort(key=lambda p: (-p["total_activity"], p["name"].lower()))
    return pending
