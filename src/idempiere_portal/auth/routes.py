"""Authentication routes for the iDempiere login flow."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse

from idempiere_portal.config import Settings
from idempiere_portal.auth.middleware import (
    LOGIN_FLOW_COOKIE,
    SESSION_COOKIE,
    AppSettings,
    CurrentSession,
    ErpClient,
    Orchestrator,
    Sessions,
    get_current_session,
    get_session_id,
)
from idempiere_portal.auth.models import (
    Credentials,
    ErpSession,
    LanguageRequest,
    LoginFlowView,
    LoginOutcome,
    SelectionRequest,
    SessionStatus,
    SessionUpdate,
    SessionView,
)
from idempiere_portal.auth.session import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


def _flow_id(request: Request) -> str:
    flow_id = request.cookies.get(LOGIN_FLOW_COOKIE)
    if not flow_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No login in progress. Start again from the login page.",
        )
    return flow_id


FlowId = Annotated[str, Depends(_flow_id)]


def _set_flow_cookie(response: Response, flow_id: str, settings: Settings) -> None:
    response.set_cookie(
        key=LOGIN_FLOW_COOKIE,
        value=flow_id,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.login_flow_ttl_seconds,
    )


def _set_session_cookie(
    response: Response,
    session_id: str,
    expires_at: int,
    session_manager: SessionManager,
    settings: Settings,
) -> None:
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session_manager.encode_cookie(session_id, expires_at),
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.session_ttl_seconds,
    )


def _finish(
    outcome: LoginOutcome,
    response: Response,
    session_manager: SessionManager,
    settings: Settings,
) -> LoginOutcome:
    """Swap the flow cookie for a session cookie once the user is signed in."""
    if outcome.is_authenticated and outcome.session_id:
        _set_session_cookie(response, outcome.session_id, outcome.session_expires_at, session_manager, settings)
        response.delete_cookie(LOGIN_FLOW_COOKIE)
    return outcome


@router.get("/login", response_model=LoginFlowView)
async def login_page(
    request: Request,
    response: Response,
    orchestrator: Orchestrator,
    session_manager: Sessions,
    settings: AppSettings,
):
    """
    Login entry point.
    Returns the login flow in progress, or starts a new one.
    """
    flow_id = request.cookies.get(LOGIN_FLOW_COOKIE)
    flow = await session_manager.get_login_flow(flow_id)
    if flow is None:
        flow = await orchestrator.start_flow()
        _set_flow_cookie(response, flow.flow_id, settings)
    return flow.view()


@router.post("/login", response_model=LoginOutcome)
async def submit_credentials(
    credentials: Credentials,
    flow_id: FlowId,
    response: Response,
    orchestrator: Orchestrator,
    session_manager: Sessions,
    settings: AppSettings,
):
    """Submit user name and password."""
    outcome = await orchestrator.submit_credentials(flow_id, credentials)
    return _finish(outcome, response, session_manager, settings)


@router.post("/login/client", response_model=LoginOutcome)
async def select_client(body: SelectionRequest, flow_id: FlowId, orchestrator: Orchestrator):
    return await orchestrator.select_client(flow_id, body.id)


@router.post("/login/role", response_model=LoginOutcome)
async def select_role(body: SelectionRequest, flow_id: FlowId, orchestrator: Orchestrator):
    return await orchestrator.select_role(flow_id, body.id)


@router.post("/login/organization", response_model=LoginOutcome)
async def select_organization(body: SelectionRequest, flow_id: FlowId, orchestrator: Orchestrator):
    return await orchestrator.select_organization(flow_id, body.id)


@router.post("/login/warehouse", response_model=LoginOutcome)
async def select_warehouse(body: SelectionRequest, flow_id: FlowId, orchestrator: Orchestrator):
    return await orchestrator.select_warehouse(flow_id, body.id)


@router.post("/login/language", response_model=LoginOutcome)
async def select_language(body: LanguageRequest, flow_id: FlowId, orchestrator: Orchestrator):
    return await orchestrator.select_language(flow_id, body.language)


@router.post("/login/context", response_model=LoginOutcome)
async def submit_context(
    flow_id: FlowId,
    response: Response,
    orchestrator: Orchestrator,
    session_manager: Sessions,
    settings: AppSettings,
):
    """Sign in with the selected client, role, organization and warehouse."""
    outcome = await orchestrator.submit_context(flow_id)
    return _finish(outcome, response, session_manager, settings)


@router.post("/login/back", response_model=LoginOutcome)
async def back_to_credentials(flow_id: FlowId, orchestrator: Orchestrator):
    return await orchestrator.back_to_credentials(flow_id)


@router.get("/me", response_model=SessionView)
async def get_current_user(session: CurrentSession, session_manager: Sessions):
    """Get the signed-in user and their context."""
    return session.view(session_manager.now())


@router.patch("/session", response_model=SessionView)
async def update_session(
    changes: SessionUpdate,
    session: CurrentSession,
    session_id: Annotated[str | None, Depends(get_session_id)],
    response: Response,
    session_manager: Sessions,
    settings: AppSettings,
):
    """Change the session language or display name. Renews the session cookie."""
    updated = await session_manager.update_session(session_id, changes)
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    _set_session_cookie(response, session_id, updated.session_expires_at, session_manager, settings)
    logger.info(f"Updated session for user {updated.user_name}")
    return updated.view(session_manager.now())


@router.get("/session/status", response_model=SessionStatus)
async def session_status(
    session: Annotated[ErpSession | None, Depends(get_current_session)],
    session_manager: Sessions,
    settings: AppSettings,
):
    """
    Expiry information for token monitors.
    Answers for expired tokens too, so a monitor can log the user out itself.
    """
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    now = session_manager.now()
    return SessionStatus(
        token_expiry=session.token_expiry,
        session_expires_at=session.session_expires_at,
        seconds_remaining=max(0, min(session.token_expiry, session.session_expires_at) - now),
        warning_threshold=settings.token_warning_seconds,
        critical_threshold=settings.token_critical_seconds,
        is_token_valid=session.is_token_valid(now),
        needs_refresh=session.needs_refresh(now),
    )


@router.post("/logout")
async def logout(
    session_id: Annotated[str | None, Depends(get_session_id)],
    session_manager: Sessions,
    erp_client: ErpClient,
    settings: AppSettings,
):
    """Log out of iDempiere and the portal. Safe to call without a session."""
    if session_id:
        session = await session_manager.get_session(session_id)
        if session and session.idempiere_token:
            if not await erp_client.logout(session.idempiere_token):
                logger.warning(f"iDempiere logout failed for user {session.user_name}")
        await session_manager.delete_session(session_id)

    response = RedirectResponse(url=settings.login_url, status_code=status.HTTP_303_SEE_OTHER)
    response.delete_cookie(SESSION_COOKIE)
    response.delete_cookie(LOGIN_FLOW_COOKIE)
    return response

