"""Tests for setter / sales rep identity resolution.

WHAT: Tests IdentityResolver, backfill, candidates, role proposals and pending CRM users
WHY: Per-user metrics and leaderboards group on *_user_id; a wrong or overwritten
     id silently moves revenue between reps

REFERENCES:
  - salesmetrics/services/identity_resolution_service.py
  - salesmetrics/routers/team.py
"""

from datetime import datetime, timedelta

import pytest

from salesmetrics.errors import AmbiguousMatch, NotFoundError, ValidationError
from salesmetrics.models import AccessRoleEnum, Appointment, CrmUser, Dial, Discovery
from salesmetrics.services import identity_resolution_service as identity
from salesmetrics.services.identity_resolution_service import (
    Ambiguous,
    IdentityResolver,
    Resolved,
    Unresolved,
    normalize_role,
)


def _appointment(account, **kwargs):
    kwargs.setdefault("date_booked_for", datetime(2024, 2, 1, 15, 0))
    return Appointment(account_id=account.id, **kwargs)


class TestIdentityResolver:

    def test_case_insensitive_names_merge_to_one_user(self, test_db_session, test_account, rep_user):
        rows = [
            _appointment(test_account, sales_rep="Jane Doe"),
            _appointment(test_account, sales_rep="jane doe"),
            _appointment(test_account, sales_rep="  JANE   DOE "),
        ]
        test_db_session.add_all(rows)
        test_db_session.commit()

        report = identity.backfill(test_db_session, test_account.id)

        assert report.succeeded >= 3
        user_ids = {row.sales_rep_user_id for row in test_db_session.query(Appointment).all()}
        assert user_ids == {rep_user.id}

    def test_dial_setter_name_variants_share_one_user(self, test_db_session, test_account, member_factory):
        jane = member_factory(test_account, "Jane Doe", AccessRoleEnum.setter)
        test_db_session.add_all(
            Dial(account_id=test_account.id, setter=name, date_called=datetime(2024, 2, 1, 9, i))
            for i, name in enumerate(["Jane Doe", "jane doe", "JANE DOE"])
        )
        test_db_session.commit()

        identity.backfill(test_db_session, test_account.id)

        assert {d.setter_user_id for d in test_db_session.query(Dial).all()} == {jane.id}

    def test_existing_user_id_is_never_overwritten(self, test_db_session, test_account, rep_user, member_factory):
        other = member_factory(test_account, "Other Rep", AccessRoleEnum.sales_rep)
        row = _appointment(test_account, sales_rep="Jane Doe", sales_rep_user_id=other.id)
        test_db_session.add(row)
        test_db_session.commit()

        outcome = IdentityResolver(test_db_session, test_account.id).fill(row, "sales_rep")
        test_db_session.commit()
        test_db_session.refresh(row)

        assert outcome == Resolved(user_id=other.id, via="existing")
        assert row.sales_rep_user_id == other.id

    def test_crm_user_id_takes_precedence_over_name(self, test_db_session, test_account, rep_user, member_factory):
        mapped = member_factory(test_account, "Mapped Rep", AccessRoleEnum.sales_rep)
        test_db_session.add(CrmUser(account_id=test_account.id, crm_user_id="crm-42", user_id=mapped.id))
        row = _appointment(test_account, sales_rep="Jane Doe", crm_sales_rep_user_id="crm-42")
        test_db_session.add(row)
        test_db_session.commit()

        outcome = IdentityResolver(test_db_session, test_account.id).resolve(row, "sales_rep")

        assert outcome == Resolved(user_id=mapped.id, via="crm_user_id")

    def test_duplicate_names_without_history_are_ambiguous(self, test_db_session, test_account, member_factory):
        first = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris1@example.com")
        second = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris2@example.com")

        outcome = IdentityResolver(test_db_session, test_account.id).resolve_name("chris lee", "setter")

        assert isinstance(outcome, Ambiguous)
        assert set(outcome.candidates) == {first.id, second.id}

    def test_duplicate_names_prefer_most_recently_seen(self, test_db_session, test_account, member_factory):
        first = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris1@example.com")
        second = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris2@example.com")
        test_db_session.add_all([
            Dial(account_id=test_account.id, setter="Chris Lee", setter_user_id=first.id,
                 date_called=datetime(2024, 1, 1, 12, 0)),
            Dial(account_id=test_account.id, setter="Chris Lee", setter_user_id=second.id,
                 date_called=datetime(2024, 2, 1, 12, 0)),
        ])
        test_db_session.commit()

        outcome = IdentityResolver(test_db_session, test_account.id).resolve_name("Chris Lee", "setter")

        assert outcome == Resolved(user_id=second.id, via="name")

    def test_tie_break_history_matches_collapsed_whitespace(self, test_db_session, test_account, member_factory):
        first = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris1@example.com")
        second = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris2@example.com")
        test_db_session.add_all([
            Dial(account_id=test_account.id, setter="Chris Lee", setter_user_id=first.id,
                 date_called=datetime(2024, 1, 1, 12, 0)),
            Dial(account_id=test_account.id, setter="chris  LEE", setter_user_id=second.id,
                 date_called=datetime(2024, 2, 1, 12, 0)),
        ])
        test_db_session.commit()

        outcome = IdentityResolver(test_db_session, test_account.id).resolve_name("Chris Lee", "setter")

        assert outcome == Resolved(user_id=second.id, via="name")

    def test_unresolved_reasons(self, test_db_session, test_account, rep_user):
        resolver = IdentityResolver(test_db_session, test_account.id)

        assert resolver.resolve_name(None, "sales_rep") == Unresolved(reason="no_name")
        assert resolver.resolve_name("   ", "sales_rep") == Unresolved(reason="no_name")
        assert resolver.resolve_name("Nobody Known", "sales_rep") == Unresolved(reason="no_match")

    def test_inactive_members_are_not_matched(self, test_db_session, test_account, member_factory):
        member_factory(test_account, "Gone Person", AccessRoleEnum.setter, is_active=False)

        outcome = IdentityResolver(test_db_session, test_account.id).resolve_name("Gone Person", "setter")

        assert outcome == Unresolved(reason="no_match")

    def test_members_of_other_accounts_are_not_matched(self, test_db_session, test_account, outsider):
        outcome = IdentityResolver(test_db_session, test_account.id).resolve_name("Olivia Outsider", "setter")

        assert outcome == Unresolved(reason="no_match")


class TestBackfill:

    def test_backfill_reports_outcomes_and_is_idempotent(
        self, test_db_session, test_account, rep_user, setter_user, member_factory
    ):
        member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris1@example.com")
        member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris2@example.com")
        test_db_session.add_all([
            _appointment(test_account, sales_rep="Jane Doe", setter="Sam Setter"),
            _appointment(test_account, sales_rep="Unknown Closer", setter="Chris Lee"),
            Dial(account_id=test_account.id, setter=None, date_called=datetime(2024, 2, 1, 9, 0)),
        ])
        test_db_session.commit()

        report = identity.backfill(test_db_session, test_account.id)

        assert report.processed == 5
        assert report.succeeded == 2
        assert report.ambiguous == 1
        assert report.unresolved == 2
        reasons = {entry["reason"] for entry in report.reasons}
        assert reasons == {"ambiguous_name", "no_match", "no_name"}

        again = identity.backfill(test_db_session, test_account.id)
        assert again.succeeded == 0
        assert again.processed == 3

    def test_backfill_picks_up_newly_invited_members(self, test_db_session, test_account, member_factory):
        test_db_session.add(Discovery(
            account_id=test_account.id,
            sales_rep="Late Joiner",
            date_booked_for=datetime(2024, 2, 1, 9, 0),
        ))
        test_db_session.commit()

        assert identity.backfill(test_db_session, test_account.id).unresolved >= 1

        joiner = member_factory(test_account, "Late Joiner", AccessRoleEnum.sales_rep)
        identity.backfill(test_db_session, test_account.id)

        assert test_db_session.query(Discovery).one().sales_rep_user_id == joiner.id


class TestCandidates:

    def test_candidates_split_invited_and_uninvited(
        self, test_db_session, test_account, admin_user, setter_user, rep_user
    ):
        test_db_session.add_all([
            _appointment(test_account, sales_rep="JANE DOE", setter="Walk In Setter"),
            _appointment(test_account, sales_rep="Freelance Closer", setter="walk in setter"),
        ])
        test_db_session.commit()

        candidates = identity.get_candidates(test_db_session, test_account.id)

        rep_names = {(c["name"], c["invited"]) for c in candidates["reps"]}
        assert ("Jane Doe", True) in rep_names
        assert ("Alice Admin", True) in rep_names
        assert ("Freelance Closer", False) in rep_names
        assert not any(name.lower() == "jane doe" and not invited for name, invited in rep_names)

        uninvited_setters = [c for c in candidates["setters"] if not c["invited"]]
        assert len(uninvited_setters) == 1
        assert uninvited_setters[0]["id"] is None
        assert uninvited_setters[0]["role"] == "setter"
        assert all(c["role"] == "rep" for c in candidates["reps"])

    def test_bare_name_folds_into_same_person_with_user_id(self, test_db_session, test_account, member_factory):
        former = member_factory(test_account, "Former Rep", AccessRoleEnum.sales_rep, is_active=False)
        test_db_session.add_all([
            _appointment(test_account, sales_rep="Former Rep", sales_rep_user_id=former.id),
            _appointment(test_account, sales_rep="former  rep"),
        ])
        test_db_session.commit()

        candidates = identity.get_candidates(test_db_session, test_account.id)

        uninvited = [c for c in candidates["reps"] if not c["invited"]]
        assert uninvited == [{"id": str(former.id), "name": "Former Rep", "role": "rep", "invited": False}]


class TestResolveUser:

    def test_resolves_by_crm_id_then_name(self, test_db_session, test_account, rep_user):
        test_db_session.add(CrmUser(account_id=test_account.id, crm_user_id="crm-7", name="J", user_id=rep_user.id))
        test_db_session.commit()

        by_crm = identity.resolve_user(test_db_session, test_account.id, "sales_rep", crm_user_id="crm-7")
        by_name = identity.resolve_user(test_db_session, test_account.id, "sales_rep", name="JANE doe")

        assert by_crm == Resolved(user_id=rep_user.id, via="crm_user_id")
        assert by_name == Resolved(user_id=rep_user.id, via="name")

    def test_duplicate_names_raise_ambiguous_match(self, test_db_session, test_account, member_factory):
        first = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris1@example.com")
        second = member_factory(test_account, "Chris Lee", AccessRoleEnum.setter, email="chris2@example.com")

        with pytest.raises(AmbiguousMatch) as exc_info:
            identity.resolve_user(test_db_session, test_account.id, "setter", name="Chris Lee")

        assert set(exc_info.value.candidates) == {first.id, second.id}
        assert exc_info.value.status_code == 409

    def test_unknown_name_and_role(self, test_db_session, test_account):
        with pytest.raises(NotFoundError):
            identity.resolve_user(test_db_session, test_account.id, "setter", name="Nobody Known")
        with pytest.raises(ValidationError):
            identity.resolve_user(test_db_session, test_account.id, "closer", name="Nobody Known")


class TestReclassifyRoles:

    def test_proposes_role_matching_observed_activity(self, test_db_session, test_account, setter_user):
        test_db_session.add_all(
            _appointment(test_account, sales_rep="Sam Setter", sales_rep_user_id=setter_user.id)
            for _ in range(3)
        )
        test_db_session.add(Dial(
            account_id=test_account.id, setter_user_id=setter_user.id, date_called=datetime(2024, 2, 1, 9, 0)
        ))
        test_db_session.commit()

        proposals = identity.reclassify_roles(test_db_session, test_account.id)

        assert len(proposals) == 1
        proposal = proposals[0]
        assert proposal.user_id == setter_user.id
        assert proposal.declared_role == AccessRoleEnum.setter
        assert proposal.proposed_role == AccessRoleEnum.sales_rep
        assert proposal.sales_rep_count == 3
        assert proposal.setter_count == 1

    def test_ties_admins_and_idle_members_get_no_proposal(
        self, test_db_session, test_account, admin_user, rep_user, setter_user
    ):
        test_db_session.add_all([
            _appointment(test_account, setter_user_id=admin_user.id),
            _appointment(test_account, setter_user_id=admin_user.id),
            _appointment(test_account, sales_rep_user_id=rep_user.id, setter_user_id=rep_user.id),
        ])
        test_db_session.commit()

        assert identity.reclassify_roles(test_db_session, test_account.id) == []

    def test_proposals_are_not_applied(self, test_db_session, test_account, rep_user):
        from salesmetrics.models import AccountAccess

        test_db_session.add(Dial(
            account_id=test_account.id, setter_user_id=rep_user.id, date_called=datetime(2024, 2, 1, 9, 0)
        ))
        test_db_session.commit()

        identity.reclassify_roles(test_db_session, test_account.id)

        access = test_db_session.query(AccountAccess).filter(AccountAccess.user_id == rep_user.id).one()
        assert access.role == AccessRoleEnum.sales_rep


class TestPendingCrmUsers:

    def test_lists_active_uninvited_crm_users_most_active_first(self, test_db_session, test_account, rep_user):
        seen = datetime(2024, 2, 1, 9, 0)
        test_db_session.add_all([
            CrmUser(account_id=test_account.id, crm_user_id="crm-1", name="Busy Closer", role="Closer"),
            CrmUser(account_id=test_account.id, crm_user_id="crm-2", name="Quiet Setter", role="setter"),
            CrmUser(account_id=test_account.id, crm_user_id="crm-3", name="Idle Person", role="owner"),
            CrmUser(account_id=test_account.id, crm_user_id="crm-4", name="Jane Doe", user_id=rep_user.id),
            _appointment(test_account, crm_sales_rep_user_id="crm-1", date_booked_for=seen),
            _appointment(test_account, crm_sales_rep_user_id="crm-1", date_booked_for=seen + timedelta(days=1)),
            _appointment(test_account, crm_sales_rep_user_id="crm-4"),
            Dial(account_id=test_account.id, crm_setter_user_id="crm-2", date_called=seen),
        ])
        test_db_session.commit()

        updated = identity.refresh_crm_user_activity(test_db_session, test_account.id)
        pending = identity.pending_crm_users(test_db_session, test_account.id)

        assert updated == 4
        assert [p["crm_user_id"] for p in pending] == ["crm-1", "crm-2"]
        assert pending[0]["appointment_count"] == 2
        assert pending[0]["suggested_role"] == "sales_rep"
        assert pending[0]["last_activity_at"] == (seen + timedelta(days=1)).isoformat()
        assert pending[1]["dial_count"] == 1
        assert pending[1]["suggested_role"] == "setter"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Closer", AccessRoleEnum.sales_rep),
        ("Sales Rep", AccessRoleEnum.sales_rep),
        ("team-lead", AccessRoleEnum.admin),
        ("SETTER", AccessRoleEnum.setter),
        ("janitor", None),
        (None, None),
    ],
)
def test_normalize_role_aliases(raw, expected):
    assert normalize_role(raw) == expected
