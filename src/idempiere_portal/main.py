"""Main FastAPI application for the iDempiere portal."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from idempiere_portal.config import Settings, get_settings
from idempiere_portal.auth.claims import SessionIssuer
from idempiere_portal.auth.erp_client import IdempiereAuthClient
from idempiere_portal.auth.errors import LoginFlowNotFound, LoginRequired
from idempiere_portal.auth.middleware import LOGIN_FLOW_COOKIE, SESSION_COOKIE
from idempiere_portal.auth.orchestrator import LoginOrchestrator
from idempiere_portal.auth.protocol import ErpAuthClientProtocol
from idempiere_portal.auth.routes import router as auth_router
from idempiere_portal.auth.session import SessionManager, SessionStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    logger.info("Starting iDempiere Portal...")
    logger.info(f"iDempiere API: {settings.idempiere_api_url or '(injected client)'}")
    logger.info(f"Session lifetime: {settings.session_expire_minutes} minutes")

    yield

    logger.info("Shutting down iDempiere Portal...")


def create_app(
    settings: Settings | None = None,
    erp_client: ErpAuthClientProtocol | None = None,
    session_store: SessionStore | None = None,
) -> FastAPI:
    """Build the application with its ERP client and session manager."""
    settings = settings or get_settings()
    configure_logging(settings)

    if erp_client is None:
        erp_client = IdempiereAuthClient.from_settings(settings)
    session_manager = SessionManager(settings, store=session_store)
    issuer = SessionIssuer(settings, session_manager)

    app = FastAPI(
        title="iDempiere Portal",
        description="Session portal for iDempiere with multi-step context login",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.erp_client = erp_client
    app.state.session_manager = session_manager
    app.state.orchestrator = LoginOrchestrator(erp_client, session_manager, issuer)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "idempiere-portal"}

    @app.exception_handler(LoginRequired)
    async def login_required_handler(request: Request, exc: LoginRequired):
        """Send the user back to the login page and drop the session cookie."""
        logger.info(f"Redirecting {request.url.path} to login: {exc.reason}")
        response = RedirectResponse(url=settings.login_url, status_code=status.HTTP_303_SEE_OTHER)
        response.delete_cookie(SESSION_COOKIE)
        return response

    @app.exception_handler(LoginFlowNotFound)
    async def login_flow_not_found_handler(request: Request, exc: LoginFlowNotFound):
        response = JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "error": "Your login has expired. Please start again.",
                "status_code": status.HTTP_404_NOT_FOUND,
            },
        )
        response.delete_cookie(LOGIN_FLOW_COOKIE)
        return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Custom HTTP exception handler."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail, "status_code": exc.status_code},
        )

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "idempiere_portal.main:create_app",
        factory=True,
        host=settings.server_host,
        port=settings.server_port,
        reload=not settings.is_production,
    )
