"""Authentication dependencies for FastAPI."""

import logging
from typing import Annotated

from fastapi import Depends, Request

from idempiere_portal.config import Settings
from idempiere_portal.auth.errors import LoginRequired
from idempiere_portal.auth.models import ErpSession
from idempiere_portal.auth.orchestrator import LoginOrchestrator
from idempiere_portal.auth.protocol import ErpAuthClientProtocol
from idempiere_portal.auth.session import SessionManager

logger = logging.getLogger(__name__)

SESSION_COOKIE = "idempiere_session"
LOGIN_FLOW_COOKIE = "idempiere_login_flow"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_erp_client(request: Request) -> ErpAuthClientProtocol:
    return request.app.state.erp_client


def get_orchestrator(request: Request) -> LoginOrchestrator:
    return request.app.state.orchestrator


async def get_session_id(
    request: Request,
    session_manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> str | None:
    """Extract the session ID from the signed session cookie."""
    return session_manager.decode_cookie(request.cookies.get(SESSION_COOKIE))


async def get_current_session(
    session_id: Annotated[str | None, Depends(get_session_id)],
    session_manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> ErpSession | None:
    """
    Get the current session from the cookie.
    Expired ERP tokens are blanked on this read. Returns None if there is no session.
    """
    if not session_id:
        return None
    return await session_manager.get_session(session_id)


async def require_session(
    session: Annotated[ErpSession | None, Depends(get_current_session)],
    session_manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> ErpSession:
    """Require a session whose ERP token is still valid."""
    if session is None:
        raise LoginRequired("no_session")
    if not session.is_token_valid(session_manager.now()):
        logger.info(f"Session for user {session.user_name} has an expired iDempiere token")
        raise LoginRequired("token_expired")
    return session


# Type aliases for dependency injection
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Sessions = Annotated[SessionManager, Depends(get_session_manager)]
ErpClient = Annotated[ErpAuthClientProtocol, Depends(get_erp_client)]
Orchestrator = Annotated[LoginOrchestrator, Depends(get_orchestrator)]
CurrentSession = Annotated[ErpSession, Depends(require_session)]
