"""Token decoding and session-ownership checks.

The dashboard holds a JWT issued by the tutoring backend. Before a
preserved session is adopted, the token's subject is compared with the
session's recorded owner. What happens on a mismatch is governed by
``SESSION_OWNERSHIP_POLICY``:

- ``warn`` (default): log the mismatch and proceed; the backend remains the
  final authority on every session-scoped call. User ids arrive in several
  formats (numeric, string, email-based subjects), so a strict comparison
  produces false mismatches.
- ``enforce``: raise :class:`SessionOwnershipError`.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from codementor.core.config import settings
from codementor.core.exceptions import SessionOwnershipError
from codementor.core.logging import get_logger

logger = get_logger(__name__)

SECRET_KEY = settings.jwt_secret_key
ALGORITHM = settings.jwt_algorithm

OWNERSHIP_WARN = "warn"
OWNERSHIP_ENFORCE = "enforce"


class TokenData(BaseModel):
    """JWT token payload."""
    sub: str  # User ID
    email: Optional[str] = None
    exp: Optional[datetime] = None


def create_access_token(user_id: str, email: Optional[str] = None,
                        expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed token for ``user_id``.

    Used by tests and local tooling; production tokens come from the backend.
    """
    if expires_delta is None:
        expires_delta = timedelta(hours=24)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": now + expires_delta,
        "iat": now,
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str, verify: bool = True) -> Optional[TokenData]:
    """Decode a JWT and return its payload.

    Args:
        token: Encoded JWT
        verify: Check signature and expiry. The dashboard does not hold the
            backend's signing key, so ownership checks decode unverified.

    Returns:
        TokenData, or None if the token cannot be decoded
    """
    try:
        if verify:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        else:
            payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token presented")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token presented: {e}")
        return None

    sub = payload.get("sub") or payload.get("user_id")
    if sub is None:
        logger.warning("Token payload carries no subject")
        return None

    exp = payload.get("exp")
    return TokenData(
        sub=str(sub),
        email=payload.get("email"),
        exp=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


def check_session_ownership(session_user_id: str, token: str,
                            policy: Optional[str] = None) -> bool:
    """Compare a session's owner with the token's subject.

    Args:
        session_user_id: ``user_id`` recorded on the session
        token: Current user's JWT
        policy: ``warn`` or ``enforce`` (defaults to settings)

    Returns:
        True if the owner matches, False on a tolerated mismatch or an
        undecodable token

    Raises:
        SessionOwnershipError: On mismatch under the ``enforce`` policy
    """
    policy = policy or settings.session_ownership_policy
    token_data = decode_token(token, verify=False)

    if token_data is None:
        logger.warning("Cannot verify session owner: token undecodable",
                       extra={"user_id": session_user_id})
        return False

    if str(token_data.sub) == str(session_user_id):
        return True

    if policy == OWNERSHIP_ENFORCE:
        logger.error(
            "Session owner mismatch, rejecting session",
            extra={"user_id": session_user_id, "error_type": "ownership_mismatch"},
        )
        raise SessionOwnershipError(str(session_user_id), token_data.sub)

    logger.warning(
        f"Session owner {session_user_id!r} differs from token subject "
        f"{token_data.sub!r}; proceeding, backend validates",
        extra={"user_id": session_user_id, "error_type": "ownership_mismatch"},
    )
    return False
