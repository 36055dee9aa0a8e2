"""Builds portal sessions from completed ERP logins."""

import logging
import math
import time
from typing import Any

from jose import JWTError, jwt

from idempiere_portal.config import Settings
from idempiere_portal.auth.models import ErpSession, LoginCompletion
from idempiere_portal.auth.session import SessionManager

logger = logging.getLogger(__name__)

FALLBACK_TOKEN_LIFETIME_SECONDS = 3600

UNKNOWN_CLIENT = "Unknown Client"
UNKNOWN_ROLE = "User"
UNKNOWN_ORGANIZATION = "Unknown Org"
DEFAULT_LANGUAGE = "en_US"

_MISSING_MARKERS = {"", "undefined", "null", "nan", "none"}


def decode_token_expiry(token: str, now: int | None = None) -> int:
    """Read the ``exp`` claim of an ERP token without verifying its signature.

    The portal never holds the ERP signing key; the ERP stays the authority
    on validity. Any malformed token yields ``now + 3600``.
    """
    now = int(time.time()) if now is None else now
    fallback = now + FALLBACK_TOKEN_LIFETIME_SECONDS

    if not token or token.count(".") != 2:
        logger.warning("ERP token is not a three-part JWT; assuming one hour lifetime")
        return fallback

    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.warning(f"Failed to decode ERP token payload: {e}")
        return fallback

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or not math.isfinite(exp):
        logger.warning("ERP token has no numeric exp claim; assuming one hour lifetime")
        return fallback
    return int(exp)


def safe_number(value: Any, default: int = 0) -> int:
    """Coerce an ID that may have been through loose serialization."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        if value.strip().lower() in _MISSING_MARKERS:
            return default
        try:
            value = float(value)
        except ValueError:
            return default
    if isinstance(value, float):
        if not math.isfinite(value):
            return default
        return int(value)
    if isinstance(value, int):
        return value
    return default


def safe_string(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, float) and math.isnan(value):
        return default
    text = str(value).strip()
    if text.lower() in _MISSING_MARKERS:
        return default
    return text


class SessionIssuer:
    """Turns a LoginCompletion into a persisted ErpSession."""

    def __init__(self, settings: Settings, session_manager: SessionManager):
        self.settings = settings
        self.session_manager = session_manager

    def build(self, completion: LoginCompletion, now: int | None = None) -> ErpSession:
        now = self.session_manager.now() if now is None else now

        user_name = safe_string(completion.user_name)
        user_id = safe_string(completion.user_id)
        if user_id in ("", "0"):
            user_id = user_name
        warehouse_id = safe_number(completion.warehouse_id)

        return ErpSession(
            user_id=user_id,
            user_name=user_name,
            email=f"{user_name}@{self.settings.email_domain}",
            idempiere_token=completion.token,
            refresh_token=completion.refresh_token or None,
            token_expiry=decode_token_expiry(completion.token, now),
            client_id=safe_number(completion.client_id),
            client_name=safe_string(completion.client_name, UNKNOWN_CLIENT),
            role_id=safe_number(completion.role_id),
            role_name=safe_string(completion.role_name, UNKNOWN_ROLE),
            organization_id=safe_number(completion.organization_id),
            organization_name=safe_string(completion.organization_name, UNKNOWN_ORGANIZATION),
            warehouse_id=warehouse_id or None,
            warehouse_name=(safe_string(completion.warehouse_name) or None) if warehouse_id else None,
            language=safe_string(completion.language, DEFAULT_LANGUAGE),
            session_expires_at=now + self.settings.session_ttl_seconds,
            created_at=now,
        )

    async def issue(self, completion: LoginCompletion) -> tuple[str, ErpSession]:
        """Build the session and persist it. Returns the new session ID and session."""
        session = self.build(completion)
        session_id = await self.session_manager.create_session(session)
        return session_id, session
