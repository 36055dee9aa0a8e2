"""Authentication data models."""

import time
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from idempiere_portal.auth.errors import ErrorKind

LoginStep = Literal["credentials", "context-selection"]

NEEDS_REFRESH_WINDOW_SECONDS = 300


class Credentials(BaseModel):
    """Username/password pair for one login attempt."""

    user_name: str = Field("", description="iDempiere user name")
    password: str = Field("", repr=False, description="iDempiere password")


class ContextSelection(BaseModel):
    """A client/role/organization/warehouse/language tuple sent to the ERP."""

    client_id: int
    role_id: int
    organization_id: int
    warehouse_id: int | None = None
    language: str = "en_US"

    def to_parameters(self) -> dict:
        return {
            "clientId": self.client_id,
            "roleId": self.role_id,
            "organizationId": self.organization_id,
            "warehouseId": self.warehouse_id or 0,
            "language": self.language or "en_US",
        }


class ContextOption(BaseModel):
    """Candidate client, organization or warehouse offered by the ERP."""

    id: int
    name: str
    value: str | None = None


class RoleOption(BaseModel):
    """Candidate role offered by the ERP."""

    id: int
    name: str


class LanguageOption(BaseModel):
    """Language offered by the ERP for a client."""

    id: str
    name: str


class SessionInfo(BaseModel):
    """Context the ERP bound to a successful login."""

    user_id: int = 0
    client_id: int
    role_id: int
    organization_id: int
    warehouse_id: int | None = None
    language: str = "en_US"


class LoginFailure(BaseModel):
    status: Literal["failure"] = "failure"
    error: str
    kind: ErrorKind = ErrorKind.HTTP_ERROR
    retryable: bool = False


class LoginNeedsContext(BaseModel):
    status: Literal["needs_context"] = "needs_context"
    token: str = Field(repr=False)
    available_clients: list[ContextOption] = Field(default_factory=list)
    available_roles: list[RoleOption] = Field(default_factory=list)
    available_organizations: list[ContextOption] = Field(default_factory=list)
    available_warehouses: list[ContextOption] = Field(default_factory=list)


class LoginSuccess(BaseModel):
    status: Literal["success"] = "success"
    token: str = Field(repr=False)
    refresh_token: str | None = Field(None, repr=False)
    session_info: SessionInfo
    available_clients: list[ContextOption] = Field(default_factory=list)
    available_roles: list[RoleOption] = Field(default_factory=list)
    available_organizations: list[ContextOption] = Field(default_factory=list)
    available_warehouses: list[ContextOption] = Field(default_factory=list)


LoginResult = Annotated[
    LoginFailure | LoginNeedsContext | LoginSuccess,
    Field(discriminator="status"),
]


class ErpSession(BaseModel):
    """Authenticated session stored server-side."""

    user_id: str
    user_name: str
    email: str
    idempiere_token: str = Field(repr=False)
    refresh_token: str | None = Field(None, repr=False)
    token_expiry: int = Field(..., description="ERP token expiry (unix seconds)")
    client_id: int
    client_name: str
    role_id: int
    role_name: str
    organization_id: int
    organization_name: str
    warehouse_id: int | None = None
    warehouse_name: str | None = None
    language: str = "en_US"
    session_expires_at: int = Field(..., description="Portal session envelope expiry (unix seconds)")
    created_at: int = Field(default_factory=lambda: int(time.time()))

    def is_token_valid(self, now: int | None = None) -> bool:
        now = int(time.time()) if now is None else now
        return bool(self.idempiere_token) and now < self.token_expiry

    def needs_refresh(self, now: int | None = None) -> bool:
        now = int(time.time()) if now is None else now
        return self.token_expiry - now < NEEDS_REFRESH_WINDOW_SECONDS

    def is_token_expired(self, now: int | None = None) -> bool:
        now = int(time.time()) if now is None else now
        return not self.idempiere_token or now >= self.token_expiry

    def view(self, now: int | None = None) -> "SessionView":
        """Read-only projection safe to hand to the UI layer."""
        return SessionView(
            user_id=self.user_id,
            user_name=self.user_name,
            email=self.email,
            client_id=self.client_id,
            client_name=self.client_name,
            role_id=self.role_id,
            role_name=self.role_name,
            organization_id=self.organization_id,
            organization_name=self.organization_name,
            warehouse_id=self.warehouse_id,
            warehouse_name=self.warehouse_name,
            language=self.language,
            token_expiry=self.token_expiry,
            session_expires_at=self.session_expires_at,
            is_token_valid=self.is_token_valid(now),
            needs_refresh=self.needs_refresh(now),
        )


class SessionView(BaseModel):
    """Client-visible session shape. Never carries ERP tokens."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    user_name: str
    email: str
    client_id: int
    client_name: str
    role_id: int
    role_name: str
    organization_id: int
    organization_name: str
    warehouse_id: int | None
    warehouse_name: str | None
    language: str
    token_expiry: int
    session_expires_at: int
    is_token_valid: bool
    needs_refresh: bool


class SessionUpdate(BaseModel):
    """Fields a signed-in user may change on their own session."""

    language: str | None = None
    user_name: str | None = None


class SessionStatus(BaseModel):
    """Expiry information polled by token monitors."""

    token_expiry: int
    session_expires_at: int
    seconds_remaining: int
    warning_threshold: int
    critical_threshold: int
    is_token_valid: bool
    needs_refresh: bool


class SelectedContext(BaseModel):
    """Selections made so far during the context-selection step."""

    client_id: int | None = None
    client_name: str | None = None
    role_id: int | None = None
    role_name: str | None = None
    organization_id: int | None = None
    organization_name: str | None = None
    warehouse_id: int | None = None
    warehouse_name: str | None = None
    language: str = "en_US"


class LoginFlowState(BaseModel):
    """Transient state of one multi-step login attempt."""

    flow_id: str
    current_step: LoginStep = "credentials"
    temp_token: str | None = Field(None, repr=False)
    temp_user_name: str = ""
    temp_password: str = Field("", repr=False)
    available_clients: list[ContextOption] = Field(default_factory=list)
    available_roles: list[RoleOption] = Field(default_factory=list)
    available_organizations: list[ContextOption] = Field(default_factory=list)
    available_warehouses: list[ContextOption] = Field(default_factory=list)
    available_languages: list[LanguageOption] = Field(default_factory=list)
    selected_context: SelectedContext = Field(default_factory=SelectedContext)
    selection_version: int = 0
    pending_fetches: dict[str, str] = Field(default_factory=dict)
    is_loading: bool = False
    error: str | None = None
    error_kind: ErrorKind | None = None
    connection_error: str | None = None
    field_errors: dict[str, str] = Field(default_factory=dict)

    def view(self) -> "LoginFlowView":
        return LoginFlowView(
            flow_id=self.flow_id,
            current_step=self.current_step,
            user_name=self.temp_user_name,
            available_clients=self.available_clients,
            available_roles=self.available_roles,
            available_organizations=self.available_organizations,
            available_warehouses=self.available_warehouses,
            available_languages=self.available_languages,
            selected_context=self.selected_context,
            is_loading=self.is_loading,
            error=self.error,
            connection_error=self.connection_error,
            field_errors=self.field_errors,
        )


class LoginFlowView(BaseModel):
    """Login flow state as exposed to the UI (no password, no token)."""

    flow_id: str
    current_step: LoginStep
    user_name: str
    available_clients: list[ContextOption]
    available_roles: list[RoleOption]
    available_organizations: list[ContextOption]
    available_warehouses: list[ContextOption]
    available_languages: list[LanguageOption]
    selected_context: SelectedContext
    is_loading: bool
    error: str | None
    connection_error: str | None
    field_errors: dict[str, str]


class LoginOutcome(BaseModel):
    """Result of one orchestrator step."""

    step: Literal["credentials", "context-selection", "session-established"]
    flow: LoginFlowView | None = None
    session_id: str | None = Field(None, exclude=True)
    session_expires_at: int | None = Field(None, exclude=True)
    error: str | None = None
    error_kind: ErrorKind | None = None
    field_errors: dict[str, str] = Field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.step == "session-established"


class LoginCompletion(BaseModel):
    """Everything needed to issue a session after a successful ERP login.

    IDs are accepted as received (ints, numeric strings, or serialization
    artifacts such as "undefined") and normalized by the session issuer.
    """

    user_name: str
    token: str = Field(repr=False)
    refresh_token: str | None = Field(None, repr=False)
    user_id: int | str | None = None
    client_id: int | str | None = None
    client_name: str | None = None
    role_id: int | str | None = None
    role_name: str | None = None
    organization_id: int | str | None = None
    organization_name: str | None = None
    warehouse_id: int | str | None = None
    warehouse_name: str | None = None
    language: str | None = None


class SelectionRequest(BaseModel):
    """Body of the cascading selection endpoints."""

    id: int | None = None


class LanguageRequest(BaseModel):
    language: str
