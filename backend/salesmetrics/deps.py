"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Callable, Optional
from uuid import UUID

from fastapi import Cookie, Depends, HTTPException, Query, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .access import AccountAccessGate
from .database import get_db
from .errors import AuthorizationError
from .models import AccessRoleEnum, User
from .security import decode_token
from .telemetry import set_user_context


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    REDIS_URL: str = "redis://localhost:6379/0"
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    # Attribution
    ATTRIBUTION_SESSION_TTL_DAYS: int = 7
    ATTRIBUTION_UTM_WINDOW_HOURS: int = 72
    FILTER_OPTIONS_LIMIT: int = 200

    # Batch jobs (recompute, backfill, cleanup)
    BATCH_SIZE: int = 500

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> User:
    """Resolve the current user from the `access_token` cookie.

    The cookie value is expected to be in the form: "Bearer <jwt>".
    """
    if not access_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    # Remove optional "Bearer " prefix
    if access_token.startswith("Bearer "):
        token = access_token[len("Bearer ") :]
    else:
        token = access_token

    try:
        payload = decode_token(token)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = (
        db.query(User)
        .filter(User.email == subject)
        .first()
    )
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    set_user_context(user_id=str(user.id), email=user.email)
    return user


def require_account_role(db: Session, user: User, account_id: UUID, minimum_role: AccessRoleEnum) -> None:
    """Raise AuthorizationError unless `user` holds `minimum_role` in the account."""
    gate = AccountAccessGate(db)
    if not gate.has_role(user.id, account_id, minimum_role):
        raise AuthorizationError(
            "You do not have access to this account",
            details={"account_id": str(account_id), "required_role": minimum_role.value},
        )


def account_member(minimum_role: AccessRoleEnum) -> Callable:
    """Build a dependency that authorizes the `account_id` query parameter.

    Example:
        @router.get("/candidates")
        def candidates(account_id: UUID = Depends(account_member(AccessRoleEnum.moderator))):
            ...
    """

    def dependency(
        account_id: UUID = Query(..., description="Account to scope the request to"),
        db: Session = Depends(get_db),
        current_user: User = Depends(get_current_user),
    ) -> UUID:
        require_account_role(db, current_user, account_id, minimum_role)
        return account_id

    return dependency
