"""Access Control Gate.

WHAT:
    The role-lookup interface consumed by HTTP handlers (before invoking the
    metrics engine) and by the identity resolver (to read active team members).

WHY:
    The engine performs no authorization itself. Keeping the gate behind a
    small Protocol lets routers authorize up front and lets tests substitute
    an in-memory gate.

REFERENCES:
    - salesmetrics/routers/*.py (require_account_role callers)
    - salesmetrics/models.py: AccountAccess, AccessRoleEnum
"""

import logging
from typing import List, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from .models import AccessRoleEnum, AccountAccess, User

logger = logging.getLogger(__name__)


# setter and sales_rep are peers; moderator and admin sit above both
ROLE_RANK = {
    AccessRoleEnum.setter: 1,
    AccessRoleEnum.sales_rep: 1,
    AccessRoleEnum.moderator: 2,
    AccessRoleEnum.admin: 3,
}


class AccessGate(Protocol):
    def has_role(self, user_id: UUID, account_id: UUID, minimum_role: AccessRoleEnum) -> bool:
        ...

    def is_global_admin(self, user_id: UUID) -> bool:
        ...


class AccountAccessGate:
    """AccessGate backed by the account_access table."""

    def __init__(self, db: Session):
        self.db = db

    def is_global_admin(self, user_id: UUID) -> bool:
        user = self.db.get(User, user_id)
        return bool(user and user.is_global_admin)

    def has_role(self, user_id: UUID, account_id: UUID, minimum_role: AccessRoleEnum) -> bool:
        if self.is_global_admin(user_id):
            return True

        access = (
            self.db.query(AccountAccess)
            .filter(
                AccountAccess.user_id == user_id,
                AccountAccess.account_id == account_id,
                AccountAccess.is_active.is_(True),
            )
            .first()
        )
        if not access:
            return False
        return ROLE_RANK[access.role] >= ROLE_RANK[minimum_role]


def active_members(db: Session, account_id: UUID) -> List[AccountAccess]:
    """Return active AccountAccess rows for an account with users loaded."""
    return (
        db.query(AccountAccess)
        .join(User, User.id == AccountAccess.user_id)
        .filter(
            AccountAccess.account_id == account_id,
            AccountAccess.is_active.is_(True),
        )
        .all()
    )
