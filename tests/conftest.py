"""Shared fixtures for the iDempiere portal tests."""

import asyncio
import json

import httpx
import pytest
from jose import jwt

from idempiere_portal.config import Settings
from idempiere_portal.auth.claims import SessionIssuer
from idempiere_portal.auth.erp_client import IdempiereAuthClient
from idempiere_portal.auth.errors import ErpError
from idempiere_portal.auth.models import (
    ContextOption,
    ContextSelection,
    Credentials,
    LanguageOption,
    LoginFailure,
    LoginNeedsContext,
    LoginSuccess,
    RoleOption,
)
from idempiere_portal.auth.orchestrator import LoginOrchestrator
from idempiere_portal.auth.session import InMemorySessionStore, SessionManager

ERP_URL = "http://erp.test/api/v1"
NOW = 1_700_000_000


def make_token(exp: int | None, /, **claims) -> str:
    """An ERP-style JWT. The portal never checks its signature."""
    payload = dict(claims)
    if exp is not None:
        payload["exp"] = exp
    return jwt.encode(payload, "erp-signing-key", algorithm="HS256")


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class FakeErpClient:
    """In-memory ErpAuthClientProtocol implementation.

    Lookups for an id listed in ``gates`` block until the event is set.
    """

    def __init__(self):
        self.login_results: list[LoginFailure | LoginNeedsContext | LoginSuccess] = []
        self.login_calls: list[tuple[Credentials, ContextSelection | None]] = []
        self.roles: dict[int, list[RoleOption]] = {}
        self.organizations: dict[tuple[int, int], list[ContextOption]] = {}
        self.warehouses: dict[tuple[int, int, int], list[ContextOption]] = {}
        self.languages: dict[int, list[LanguageOption]] = {}
        self.errors: dict[str, ErpError] = {}
        self.gates: dict[tuple[str, int], asyncio.Event] = {}
        self.requests: list[tuple[str, int]] = []
        self.logout_calls: list[str] = []

    async def _wait(self, kind: str, key: int) -> None:
        self.requests.append((kind, key))
        gate = self.gates.get((kind, key))
        if gate is not None:
            await gate.wait()
        if kind in self.errors:
            raise self.errors[kind]

    async def login(self, credentials, context=None):
        self.login_calls.append((credentials, context))
        return self.login_results.pop(0)

    async def get_roles(self, token, client_id):
        await self._wait("roles", client_id)
        return self.roles.get(client_id, [])

    async def get_organizations(self, token, client_id, role_id):
        await self._wait("organizations", role_id)
        return self.organizations.get((client_id, role_id), [])

    async def get_warehouses(self, token, client_id, role_id, organization_id):
        await self._wait("warehouses", organization_id)
        return self.warehouses.get((client_id, role_id, organization_id), [])

    async def get_languages(self, token, client_id):
        await self._wait("languages", client_id)
        return self.languages.get(client_id, [])

    async def validate_token(self, token):
        return bool(token)

    async def logout(self, token):
        self.logout_calls.append(token)
        return True


def json_response(status_code: int, body) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(body), headers={"Content-Type": "application/json"})


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        idempiere_api_url=ERP_URL,
        session_secret_key="test-session-secret",
        session_expire_minutes=60,
        server_env="development",
        email_domain="example.com",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_manager(settings, clock) -> SessionManager:
    return SessionManager(settings, store=InMemorySessionStore(clock=clock), clock=clock)


@pytest.fixture
def issuer(settings, session_manager) -> SessionIssuer:
    return SessionIssuer(settings, session_manager)


@pytest.fixture
def fake_erp() -> FakeErpClient:
    return FakeErpClient()


@pytest.fixture
def orchestrator(fake_erp, session_manager, issuer) -> LoginOrchestrator:
    return LoginOrchestrator(fake_erp, session_manager, issuer)


@pytest.fixture
def erp_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def make_erp_client(erp_requests):
    """Build a real IdempiereAuthClient over an httpx.MockTransport."""

    def build(handler) -> IdempiereAuthClient:
        def record(request: httpx.Request) -> httpx.Response:
            erp_requests.append(request)
            return handler(request)

        return IdempiereAuthClient(ERP_URL, transport=httpx.MockTransport(record))

    return build
