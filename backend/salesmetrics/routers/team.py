"""Team identity endpoints.

WHAT:
    - Invited / uninvited setter and rep candidates for the team page
    - Identity backfill of activity rows (sync run or queued)
    - Role reclassification proposals (read-only)
    - CRM users with activity who are not invited yet
    - Single name / CRM id resolution preview

WHY:
    Admins invite the people the CRM already knows about and fix role
    mismatches; every per-user metric depends on these identities.

REFERENCES:
    - salesmetrics/services/identity_resolution_service.py
"""

import asyncio
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, account_member, get_settings
from ..models import AccessRoleEnum
from ..services import identity_resolution_service as identity
from ..workers.arq_enqueue import enqueue_backfill_identities

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/team",
    tags=["Team"],
    responses={
        403: {"model": schemas.ErrorResponse, "description": "No access to the account"},
        503: {"model": schemas.ErrorResponse, "description": "Background job could not be queued"},
    },
)


# =============================================================================
# SCHEMAS
# =============================================================================

class CandidateResponse(BaseModel):
    id: Optional[str] = None
    name: str
    role: str = Field(..., description="rep or setter")
    invited: bool


class CandidatesResponse(BaseModel):
    reps: List[CandidateResponse]
    setters: List[CandidateResponse]


class BackfillResponse(BaseModel):
    """Backfill summary, or the queued job id when run in the background."""
    queued: bool = False
    job_id: Optional[str] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    ambiguous: int = 0
    unresolved: int = 0
    reasons: List[dict] = Field(default_factory=list)


class ResolvedUserResponse(BaseModel):
    user_id: str
    via: str = Field(..., description="crm_user_id or name")


class RoleProposalResponse(BaseModel):
    user_id: str
    name: str
    declared_role: str
    proposed_role: str
    setter_count: int
    sales_rep_count: int


class PendingCrmUserResponse(BaseModel):
    crm_user_id: str
    name: str
    email: Optional[str] = None
    suggested_role: Optional[str] = None
    appointment_count: int
    dial_count: int
    discovery_count: int
    total_activity: int
    last_activity_at: Optional[str] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/candidates", response_model=CandidatesResponse)
def get_candidates(
    account_id: UUID = Depends(account_member(AccessRoleEnum.moderator)),
    db: Session = Depends(get_db),
):
    return identity.get_candidates(db, account_id)


@router.post("/backfill", response_model=BackfillResponse)
async def backfill_identities(
    account_id: UUID = Depends(account_member(AccessRoleEnum.admin)),
    background: bool = Query(False, description="Queue on the arq worker instead of running inline"),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Fill null setter/sales rep user ids from current team membership."""
    if background:
        job_id = await enqueue_backfill_identities(account_id)
        return BackfillResponse(queued=True, job_id=job_id)

    # Full-account walk; keep it off the event loop
    report = await asyncio.to_thread(identity.backfill, db, account_id, settings.BATCH_SIZE)
    return BackfillResponse(**report.to_dict())


@router.get("/role-proposals", response_model=List[RoleProposalResponse])
def role_proposals(
    account_id: UUID = Depends(account_member(AccessRoleEnum.admin)),
    db: Session = Depends(get_db),
):
    """Suggested role corrections. Nothing is changed."""
    return [proposal.to_dict() for proposal in identity.reclassify_roles(db, account_id)]


@router.get("/pending-crm-users", response_model=List[PendingCrmUserResponse])
def pending_crm_users(
    account_id: UUID = Depends(account_member(AccessRoleEnum.moderator)),
    refresh: bool = Query(True, description="Recount activity before listing"),
    db: Session = Depends(get_db),
):
    if refresh:
        identity.refresh_crm_user_activity(db, account_id)
    return identity.pending_crm_users(db, account_id)


@router.get(
    "/resolve",
    response_model=ResolvedUserResponse,
    responses={
        404: {"model": schemas.ErrorResponse, "description": "No member matches"},
        409: {"model": schemas.ErrorResponse, "description": "Several members match the name"},
    },
)
def resolve_user(
    account_id: UUID = Depends(account_member(AccessRoleEnum.moderator)),
    role: str = Query(..., description="setter or sales_rep"),
    name: Optional[str] = Query(None),
    crm_user_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Preview which member a CRM name / user id would be assigned to."""
    outcome = identity.resolve_user(db, account_id, role, name=name, crm_user_id=crm_user_id)
    return ResolvedUserResponse(user_id=str(outcome.user_id), via=outcome.via)
