"""Authentication module for the iDempiere portal."""

from idempiere_portal.auth.errors import ErpError, ErrorKind, LoginFlowNotFound, LoginRequired
from idempiere_portal.auth.models import (
    Credentials,
    ContextSelection,
    ErpSession,
    LoginFlowState,
    LoginOutcome,
    LoginResult,
    SessionView,
)
from idempiere_portal.auth.erp_client import IdempiereAuthClient
from idempiere_portal.auth.protocol import ErpAuthClientProtocol
from idempiere_portal.auth.claims import SessionIssuer, decode_token_expiry
from idempiere_portal.auth.session import SessionManager, InMemorySessionStore, RedisSessionStore
from idempiere_portal.auth.orchestrator import LoginOrchestrator
from idempiere_portal.auth.middleware import require_session, CurrentSession
from idempiere_portal.auth.monitor import TokenMonitor, MonitorEvent, PortalLogoutHandler
from idempiere_portal.auth.routes import router as auth_router

__all__ = [
    # Errors
    "ErpError",
    "ErrorKind",
    "LoginFlowNotFound",
    "LoginRequired",
    # Models
    "Credentials",
    "ContextSelection",
    "ErpSession",
    "LoginFlowState",
    "LoginOutcome",
    "LoginResult",
    "SessionView",
    # ERP client
    "IdempiereAuthClient",
    "ErpAuthClientProtocol",
    # Session
    "SessionIssuer",
    "decode_token_expiry",
    "SessionManager",
    "InMemorySessionStore",
    "RedisSessionStore",
    # Login
    "LoginOrchestrator",
    # Middleware
    "require_session",
    "CurrentSession",
    # Monitor
    "TokenMonitor",
    "MonitorEvent",
    "PortalLogoutHandler",
    # Routes
    "auth_router",
]
