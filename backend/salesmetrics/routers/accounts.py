"""Account settings endpoints.

WHAT:
    Reads and updates an account's business timezone.

WHY:
    Every local_date bucket is derived from the account timezone. Changing it
    persists the new zone and queues a recompute of all historical buckets on
    the arq worker.

REFERENCES:
    - salesmetrics/services/local_date_service.py: recompute_for_account
    - salesmetrics/workers/arq_worker.py: recompute_local_dates_job
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import get_current_user, require_account_role
from ..errors import NotFoundError, ValidationError
from ..models import AccessRoleEnum, Account, User
from ..services.local_date_service import is_valid_timezone
from ..workers.arq_enqueue import enqueue_recompute_local_dates

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/accounts",
    tags=["Accounts"],
    responses={
        403: {"model": schemas.ErrorResponse, "description": "No access to the account"},
        404: {"model": schemas.ErrorResponse, "description": "Account not found"},
    },
)


class TimezoneUpdate(BaseModel):
    business_timezone: str = Field(..., examples=["America/New_York"])


class TimezoneResponse(BaseModel):
    account_id: UUID
    business_timezone: str
    recompute_job_id: Optional[str] = None


def _get_account(db: Session, account_id: UUID) -> Account:
    account = db.get(Account, account_id)
    if not account:
        raise NotFoundError("Account not found", details={"account_id": str(account_id)})
    return account


@router.get("/{account_id}/timezone", response_model=TimezoneResponse)
def get_timezone(
    account_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    require_account_role(db, current_user, account_id, AccessRoleEnum.setter)
    account = _get_account(db, account_id)
    return TimezoneResponse(account_id=account.id, business_timezone=account.business_timezone)


@router.put(
    "/{account_id}/timezone",
    response_model=TimezoneResponse,
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Unknown timezone"},
        503: {"model": schemas.ErrorResponse, "description": "Timezone saved but the recompute was not queued"},
    },
)
async def update_timezone(
    account_id: UUID,
    payload: TimezoneUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Persist a new business timezone and queue a bucket recompute."""
    require_account_role(db, current_user, account_id, AccessRoleEnum.admin)

    tz_name = payload.business_timezone.strip()
    if not is_valid_timezone(tz_name):
        raise ValidationError(f"Unknown timezone: {tz_name}", details={"timezone": tz_name})

    account = _get_account(db, account_id)
    previous = account.business_timezone
    if previous == tz_name:
        return TimezoneResponse(account_id=account.id, business_timezone=tz_name)

    account.business_timezone = tz_name
    db.commit()
    logger.info("[ACCOUNTS] Timezone for %s changed %s -> %s", account_id, previous, tz_name)

    job_id = await enqueue_recompute_local_dates(account_id)
    return TimezoneResponse(account_id=account.id, business_timezone=tz_name, recompute_job_id=job_id)
