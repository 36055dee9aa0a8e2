"""iDempiere REST authentication client."""

import logging
from typing import Any, Callable, TypeVar

import httpx

from idempiere_portal.config import Settings
from idempiere_portal.auth.errors import (
    FORBIDDEN_MESSAGE,
    INVALID_CREDENTIALS_MESSAGE,
    SERVER_ERROR_MESSAGE,
    SERVICE_UNAVAILABLE_MESSAGE,
    ErpError,
    ErrorKind,
)
from idempiere_portal.auth.models import (
    ContextOption,
    ContextSelection,
    Credentials,
    LanguageOption,
    LoginFailure,
    LoginNeedsContext,
    LoginResult,
    LoginSuccess,
    RoleOption,
    SessionInfo,
)

logger = logging.getLogger(__name__)

LOGIN_PATH = "/auth/tokens"
VALIDATE_PATH = "/auth/tokens/validate"
LOGOUT_PATH = "/auth/tokens/logout"
ROLES_PATH = "/auth/roles"
ORGANIZATIONS_PATH = "/auth/organizations"
WAREHOUSES_PATH = "/auth/warehouses"
LANGUAGE_PATH = "/auth/language"

DEFAULT_LANGUAGE = "en_US"

T = TypeVar("T")


def _to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _require_positive(name: str, value: int) -> None:
    if _to_int(value) is None or int(value) <= 0:
        raise ErpError(ErrorKind.VALIDATION, f"{name} must be a positive integer")


def _context_options(items: list[dict] | None) -> list[ContextOption]:
    options = []
    for item in items or []:
        value = item.get("value")
        options.append(ContextOption(
            id=item["id"],
            name=item.get("name") or str(item["id"]),
            value=str(value) if value not in (None, "") else str(item["id"]),
        ))
    return options


def _role_options(items: list[dict] | None) -> list[RoleOption]:
    return [RoleOption(id=item["id"], name=item.get("name") or str(item["id"])) for item in items or []]


def _language_options(items: list[dict] | None) -> list[LanguageOption]:
    return [LanguageOption(id=str(item["id"]), name=item.get("name") or str(item["id"])) for item in items or []]


class IdempiereAuthClient:
    """Talks to the iDempiere REST auth endpoints.

    Every transport or HTTP failure is normalized: login() returns a
    LoginFailure, lookups raise ErpError. httpx exceptions never escape.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url:
            raise ValueError("IDEMPIERE_API_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdempiereAuthClient":
        return cls(settings.idempiere_api_url, timeout_seconds=settings.idempiere_timeout_seconds)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self,
        credentials: Credentials,
        context: ContextSelection | None = None,
    ) -> LoginResult:
        """Authenticate with iDempiere, optionally with a full context."""
        if not credentials.user_name or not credentials.password:
            return LoginFailure(
                error="Username and password are required",
                kind=ErrorKind.VALIDATION,
            )

        body: dict[str, Any] = {
            "userName": credentials.user_name,
            "password": credentials.password,
        }
        if context is not None:
            body["parameters"] = context.to_parameters()

        try:
            async with self._client() as client:
                resp = await client.post(LOGIN_PATH, json=body)
        except httpx.TransportError as e:
            logger.error(f"iDempiere login unreachable for user {credentials.user_name}: {e!r}")
            return LoginFailure(
                error=SERVICE_UNAVAILABLE_MESSAGE,
                kind=ErrorKind.NETWORK_UNAVAILABLE,
                retryable=True,
            )

        if resp.status_code == 401:
            logger.info(f"Invalid credentials for user {credentials.user_name}")
            return LoginFailure(error=INVALID_CREDENTIALS_MESSAGE, kind=ErrorKind.INVALID_CREDENTIALS)

        if not resp.is_success:
            error = self._error_from_response(resp)
            return LoginFailure(error=error.message, kind=error.kind, retryable=error.retryable)

        try:
            data = resp.json()
        except ValueError:
            logger.error(f"iDempiere login returned non-JSON body (status {resp.status_code})")
            return LoginFailure(error=SERVER_ERROR_MESSAGE, kind=ErrorKind.SERVER_ERROR, retryable=True)

        try:
            return self._process_login_response(data, context)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed iDempiere login response: {e!r}")
            return LoginFailure(error=SERVER_ERROR_MESSAGE, kind=ErrorKind.SERVER_ERROR, retryable=True)

    def _process_login_response(
        self,
        data: dict,
        context: ContextSelection | None,
    ) -> LoginResult:
        token = data.get("token")
        if not token:
            logger.error("iDempiere login response did not include a token")
            return LoginFailure(error=SERVER_ERROR_MESSAGE, kind=ErrorKind.SERVER_ERROR, retryable=True)

        clients = _context_options(data.get("clients"))
        roles = _role_options(data.get("roles"))
        organizations = _context_options(data.get("organizations"))
        warehouses = _context_options(data.get("warehouses"))

        needs_context = LoginNeedsContext(
            token=token,
            available_clients=clients,
            available_roles=roles,
            available_organizations=organizations,
            available_warehouses=warehouses,
        )

        has_multiple_options = any(len(items) > 1 for items in (clients, roles, organizations, warehouses))
        if context is None and has_multiple_options and (clients or roles):
            return needs_context

        info = data.get("sessionInfo")
        resolved = self._resolve_context(context, info, clients, roles, organizations, warehouses)

        # iDempiere answers an ambiguous one-step login with zeroed ids
        if not resolved["role_id"] or not resolved["organization_id"] or not resolved["client_id"]:
            logger.warning("iDempiere login returned an incomplete context; context selection required")
            return needs_context

        language = (info or {}).get("language") or (context.language if context else None) or DEFAULT_LANGUAGE
        return LoginSuccess(
            token=token,
            refresh_token=data.get("refreshToken"),
            session_info=SessionInfo(
                user_id=_to_int((info or {}).get("userId")) or 0,
                client_id=resolved["client_id"],
                role_id=resolved["role_id"],
                organization_id=resolved["organization_id"],
                warehouse_id=resolved["warehouse_id"] or None,
                language=language,
            ),
            available_clients=clients,
            available_roles=roles,
            available_organizations=organizations,
            available_warehouses=warehouses,
        )

    @staticmethod
    def _resolve_context(
        context: ContextSelection | None,
        info: dict | None,
        clients: list[ContextOption],
        roles: list[RoleOption],
        organizations: list[ContextOption],
        warehouses: list[ContextOption],
    ) -> dict[str, int | None]:
        """Pick each context id from the request, then sessionInfo, then single options.

        When the ERP sent sessionInfo its values are authoritative; a zero
        there means the ERP left the field unset.
        """
        requested = context.model_dump() if context else {}
        sources = {
            "client_id": ("clientId", clients),
            "role_id": ("roleId", roles),
            "organization_id": ("organizationId", organizations),
            "warehouse_id": ("warehouseId", warehouses),
        }
        resolved: dict[str, int | None] = {}
        for field, (info_key, options) in sources.items():
            value = _to_int(requested.get(field)) or None
            if value is None and info is not None:
                value = _to_int(info.get(info_key)) or None
            elif value is None and len(options) == 1:
                value = options[0].id
            resolved[field] = value
        return resolved

    # ------------------------------------------------------------------
    # Token validation / logout
    # ------------------------------------------------------------------

    async def validate_token(self, token: str) -> bool:
        """Validate an ERP token."""
        if not token:
            return False
        try:
            async with self._client() as client:
                resp = await client.get(VALIDATE_PATH, headers={"Authorization": f"Bearer {token}"})
            return resp.is_success
        except httpx.TransportError as e:
            logger.warning(f"Token validation failed to reach iDempiere: {e!r}")
            return False

    async def logout(self, token: str) -> bool:
        """Invalidate an ERP token."""
        if not token:
            return False
        try:
            async with self._client() as client:
                resp = await client.delete(LOGOUT_PATH, headers={"Authorization": f"Bearer {token}"})
            return resp.is_success
        except httpx.TransportError as e:
            logger.warning(f"Logout failed to reach iDempiere: {e!r}")
            return False

    # ------------------------------------------------------------------
    # Context lookups
    # ------------------------------------------------------------------

    async def get_roles(self, token: str, client_id: int) -> list[RoleOption]:
        """Get available roles for a client."""
        _require_positive("client_id", client_id)
        return await self._fetch_context_data(token, ROLES_PATH, {"client": client_id}, "roles", _role_options)

    async def get_organizations(self, token: str, client_id: int, role_id: int) -> list[ContextOption]:
        """Get available organizations for a client and role."""
        _require_positive("client_id", client_id)
        _require_positive("role_id", role_id)
        return await self._fetch_context_data(
            token, ORGANIZATIONS_PATH, {"client": client_id, "role": role_id}, "organizations", _context_options
        )

    async def get_warehouses(
        self,
        token: str,
        client_id: int,
        role_id: int,
        organization_id: int,
    ) -> list[ContextOption]:
        """Get available warehouses for a client, role and organization."""
        _require_positive("client_id", client_id)
        _require_positive("role_id", role_id)
        _require_positive("organization_id", organization_id)
        return await self._fetch_context_data(
            token,
            WAREHOUSES_PATH,
            {"client": client_id, "role": role_id, "organization": organization_id},
            "warehouses",
            _context_options,
        )

    async def get_languages(self, token: str, client_id: int) -> list[LanguageOption]:
        """Get available languages for a client."""
        _require_positive("client_id", client_id)
        return await self._fetch_context_data(token, LANGUAGE_PATH, {"client": client_id}, "languages", _language_options)

    async def _fetch_context_data(
        self,
        token: str,
        path: str,
        params: dict[str, int],
        data_key: str,
        parse: Callable[[list[dict]], list[T]],
    ) -> list[T]:
        if not token:
            raise ErpError(ErrorKind.VALIDATION, "Authentication token is required")

        try:
            async with self._client() as client:
                resp = await client.get(path, params=params, headers={"Authorization": f"Bearer {token}"})
        except httpx.TransportError as e:
            logger.error(f"Failed to fetch {data_key} from iDempiere: {e!r}")
            raise ErpError(ErrorKind.NETWORK_UNAVAILABLE, SERVICE_UNAVAILABLE_MESSAGE)

        if not resp.is_success:
            raise self._error_from_response(resp)

        try:
            data = resp.json()
        except ValueError:
            logger.error(f"iDempiere returned non-JSON {data_key} (status {resp.status_code})")
            raise ErpError(ErrorKind.SERVER_ERROR, SERVER_ERROR_MESSAGE, resp.status_code)

        # API might return {data_key: [...]} or a bare list
        if isinstance(data, dict):
            data = data.get(data_key) or []
        if not isinstance(data, list):
            return []
        try:
            return parse(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed {data_key} from iDempiere: {e!r}")
            raise ErpError(ErrorKind.SERVER_ERROR, SERVER_ERROR_MESSAGE, resp.status_code)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _error_from_response(resp: httpx.Response) -> ErpError:
        status_code = resp.status_code

        if status_code == 401:
            return ErpError(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE, status_code)

        if status_code == 403:
            return ErpError(ErrorKind.FORBIDDEN, FORBIDDEN_MESSAGE, status_code)

        if status_code >= 500:
            logger.error(f"iDempiere server error {status_code}: {resp.text[:500]}")
            return ErpError(ErrorKind.SERVER_ERROR, SERVER_ERROR_MESSAGE, status_code)

        fallback = f"Request failed: {status_code} {resp.reason_phrase}".strip()
        try:
            body = resp.json()
            detail = body.get("detail") or body.get("title") if isinstance(body, dict) else None
        except ValueError:
            detail = resp.text.strip() or None
        return ErpError(ErrorKind.HTTP_ERROR, detail or fallback, status_code)


