"""Attribution session endpoints.

WHAT:
    - POST /v1/attribution/track: public tracking script touch (upsert)
    - POST /v1/attribution/link-contact: link a session to a contact
    - GET  /v1/attribution/stats: session statistics for one account

WHY:
    The tracking script on landing pages records anonymous sessions; the
    booking flow later links the session to the contact it produced.

REFERENCES:
    - salesmetrics/services/attribution_linker.py
"""

import logging
from datetime import timedelta
from typing import Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..deps import Settings, account_member, get_current_user, get_settings, require_account_role
from ..errors import NotFoundError
from ..models import AccessRoleEnum, Account, AttributionSession, User
from ..services import attribution_linker

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/v1/attribution",
    tags=["Attribution"],
    responses={
        400: {"model": schemas.ErrorResponse, "description": "Invalid touch payload"},
        404: {"model": schemas.ErrorResponse, "description": "Account, session or contact not found"},
    },
)


# =============================================================================
# SCHEMAS
# =============================================================================

class TrackRequest(BaseModel):
    """A touch sent by the tracking script."""
    account_id: UUID
    session_id: str = Field(..., min_length=1, max_length=255)
    fbclid: Optional[str] = None
    gclid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    utm_id: Optional[str] = None
    meta_campaign_id: Optional[str] = None
    meta_ad_set_id: Optional[str] = None
    meta_ad_id: Optional[str] = None
    landing_url: Optional[str] = None
    referrer_url: Optional[str] = None
    fingerprint_id: Optional[str] = None


class LinkContactRequest(BaseModel):
    account_id: UUID
    session_id: str
    contact_id: UUID


class SessionResponse(BaseModel):
    session_id: str
    account_id: UUID
    contact_id: Optional[UUID] = None
    quality: str
    method: Optional[str] = None
    expires_at: str


class SessionStatsResponse(BaseModel):
    total_active_sessions: int
    linked_sessions: int
    unlinked_sessions: int
    quality_breakdown: Dict[str, int]
    method_breakdown: Dict[str, int]


def _session_response(session: AttributionSession) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        account_id=session.account_id,
        contact_id=session.contact_id,
        quality=session.quality.value,
        method=session.method.value if session.method else None,
        expires_at=session.expires_at.isoformat(),
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/track", response_model=SessionResponse)
def track(
    payload: TrackRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Record a touch. Public: called from customer landing pages."""
    if not db.get(Account, payload.account_id):
        raise NotFoundError("Account not found", details={"account_id": str(payload.account_id)})

    values = payload.model_dump(exclude={"account_id", "session_id"})
    session = attribution_linker.track_touch(
        db,
        payload.account_id,
        payload.session_id,
        values,
        ttl_days=settings.ATTRIBUTION_SESSION_TTL_DAYS,
    )
    return _session_response(session)


@router.post("/link-contact", response_model=SessionResponse)
def link_contact(
    payload: LinkContactRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
):
    require_account_role(db, current_user, payload.account_id, AccessRoleEnum.setter)

    session = attribution_linker.link_contact(
        db,
        payload.account_id,
        payload.session_id,
        payload.contact_id,
        utm_window=timedelta(hours=settings.ATTRIBUTION_UTM_WINDOW_HOURS),
    )
    return _session_response(session)


@router.get("/stats", response_model=SessionStatsResponse)
def stats(
    account_id: UUID = Depends(account_member(AccessRoleEnum.moderator)),
    db: Session = Depends(get_db),
):
    return attribution_linker.session_stats(db, account_id).to_dict()
