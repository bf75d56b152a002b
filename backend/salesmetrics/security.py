"""Security utilities for JWTs.

WHAT:
    Issues and decodes the session JWT carried in the `access_token` cookie.

WHY:
    The dashboard authenticates against this API with a cookie set by the
    login flow; deps.get_current_user decodes it on every request.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt, JWTError


ALGORITHM = "HS256"
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))

logger = logging.getLogger(__name__)


if not JWT_SECRET:
    # Attempt to load from local .env if running in dev
    from salesmetrics.utils.env import load_env_file, require_env
    load_env_file()
    JWT_SECRET = require_env("JWT_SECRET")
    JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))


def create_access_token(subject: str, expires_minutes: int | None = None, extra: Dict[str, Any] | None = None) -> str:
    """Create a signed JWT for `subject` (the user's email)."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or JWT_EXPIRES_MINUTES)
    to_encode: Dict[str, Any] = {"sub": subject, "exp": expire}
    if extra:
        to_encode.update(extra)
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, raising ValueError on failure."""
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError as exc:
        logger.debug("[AUTH] Token decode failed: %s", exc)
        raise ValueError("Invalid token") from exc
