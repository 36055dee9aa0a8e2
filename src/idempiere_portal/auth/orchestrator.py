"""Multi-step iDempiere login: credentials, then context selection."""

import asyncio
import logging
import weakref
from typing import Callable

from idempiere_portal.auth import flow as flow_ops
from idempiere_portal.auth.claims import SessionIssuer
from idempiere_portal.auth.errors import ErpError, ErrorKind, LoginFlowNotFound
from idempiere_portal.auth.models import (
    ContextOption,
    ContextSelection,
    Credentials,
    LoginCompletion,
    LoginFailure,
    LoginFlowState,
    LoginOutcome,
    LoginSuccess,
    RoleOption,
)
from idempiere_portal.auth.protocol import ErpAuthClientProtocol
from idempiere_portal.auth.session import SessionManager

logger = logging.getLogger(__name__)

REQUIRED_FIELD_MESSAGES = {
    "client_id": "Client is required",
    "role_id": "Role is required",
    "organization_id": "Organization is required",
}
INCOMPLETE_CONTEXT_MESSAGE = "Please select a client, role and organization."
CONTEXT_REJECTED_MESSAGE = "The selected context could not be used to sign in. Please choose another."
NOT_SELECTING_CONTEXT_MESSAGE = "Sign in with your username and password first."

# Selecting a stage triggers a lookup for the stage after it.
_NEXT_LOOKUP = {
    "client": "role",
    "role": "organization",
    "organization": "warehouse",
}

_SELECTION_LISTS = {
    "client": "available_clients",
    "role": "available_roles",
    "organization": "available_organizations",
    "warehouse": "available_warehouses",
}

_LOOKUP_LISTS = {
    "role": "available_roles",
    "organization": "available_organizations",
    "warehouse": "available_warehouses",
    "language": "available_languages",
}


def _find(options: list[ContextOption] | list[RoleOption], option_id: int | None):
    if not option_id:
        return None
    return next((option for option in options if option.id == option_id), None)


def _fetch_key(flow: LoginFlowState) -> str:
    selected = flow.selected_context
    return (
        f"{flow.selection_version}:{selected.client_id}:"
        f"{selected.role_id}:{selected.organization_id}"
    )


class LoginOrchestrator:
    """Drives a login flow from credentials to an issued session.

    Flow records are read and replaced under a per-flow lock; ERP calls
    are made outside the lock and their results are applied only if the
    selection they were made for is still current.
    """

    def __init__(
        self,
        erp_client: ErpAuthClientProtocol,
        session_manager: SessionManager,
        issuer: SessionIssuer,
    ):
        self.erp_client = erp_client
        self.session_manager = session_manager
        self.issuer = issuer
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Flow storage
    # ------------------------------------------------------------------

    async def start_flow(self) -> LoginFlowState:
        flow = await self.session_manager.create_login_flow()
        logger.info(f"Started login flow {flow.flow_id[:8]}...")
        return flow

    async def get_flow(self, flow_id: str | None) -> LoginFlowState:
        flow = await self.session_manager.get_login_flow(flow_id)
        if flow is None:
            raise LoginFlowNotFound(flow_id)
        return flow

    def _lock(self, flow_id: str) -> asyncio.Lock:
        # entries vanish once no caller holds the lock
        lock = self._locks.get(flow_id)
        if lock is None:
            lock = self._locks[flow_id] = asyncio.Lock()
        return lock

    async def _mutate(
        self,
        flow_id: str,
        change: Callable[[LoginFlowState], LoginFlowState],
    ) -> LoginFlowState:
        async with self._lock(flow_id):
            flow = await self.get_flow(flow_id)
            flow = change(flow)
            await self.session_manager.save_login_flow(flow)
            return flow

    async def _discard(self, flow_id: str) -> None:
        async with self._lock(flow_id):
            await self.session_manager.delete_login_flow(flow_id)

    @staticmethod
    def _outcome(flow: LoginFlowState) -> LoginOutcome:
        return LoginOutcome(
            step=flow.current_step,
            flow=flow.view(),
            error=flow.error,
            error_kind=flow.error_kind,
            field_errors=flow.field_errors,
        )

    # ------------------------------------------------------------------
    # Credentials step
    # ------------------------------------------------------------------

    async def submit_credentials(self, flow_id: str, credentials: Credentials) -> LoginOutcome:
        """Authenticate a user name and password."""
        await self.get_flow(flow_id)

        field_errors = {}
        if not credentials.user_name:
            field_errors["user_name"] = "Username is required"
        if not credentials.password:
            field_errors["password"] = "Password is required"
        if field_errors:
            flow = await self._mutate(
                flow_id,
                lambda f: flow_ops.with_error(
                    f, "Username and password are required", ErrorKind.VALIDATION, field_errors
                ),
            )
            return self._outcome(flow)

        await self._mutate(
            flow_id,
            lambda f: flow_ops.clear_errors(f).model_copy(update={
                "temp_user_name": credentials.user_name,
                "is_loading": True,
            }),
        )

        logger.info(f"Submitting credentials for user {credentials.user_name}")
        result = await self.erp_client.login(credentials)

        if isinstance(result, LoginFailure):
            logger.info(f"Login failed for user {credentials.user_name}: {result.kind.value}")
            flow = await self._mutate(
                flow_id,
                lambda f: flow_ops.with_error(f, result.error, result.kind).model_copy(update={
                    "current_step": "credentials",
                    "temp_token": None,
                    "temp_password": "",
                }),
            )
            return self._outcome(flow)

        if isinstance(result, LoginSuccess):
            flow = await self.get_flow(flow_id)
            return await self._complete(flow, credentials.user_name, result)

        flow = await self._mutate(
            flow_id,
            lambda f: flow_ops.proceed_to_context_selection(f, credentials, result),
        )
        logger.info(
            f"User {credentials.user_name} needs context selection "
            f"({len(flow.available_clients)} clients)"
        )

        if len(flow.available_clients) == 1:
            return await self.select_client(flow_id, flow.available_clients[0].id)
        return self._outcome(flow)

    # ------------------------------------------------------------------
    # Context selection step
    # ------------------------------------------------------------------

    async def select_client(self, flow_id: str, client_id: int | None) -> LoginOutcome:
        """Select a client; roles and languages are fetched for it."""
        return await self._select(flow_id, "client", client_id)

    async def select_role(self, flow_id: str, role_id: int | None) -> LoginOutcome:
        return await self._select(flow_id, "role", role_id)

    async def select_organization(self, flow_id: str, organization_id: int | None) -> LoginOutcome:
        return await self._select(flow_id, "organization", organization_id)

    async def select_warehouse(self, flow_id: str, warehouse_id: int | None) -> LoginOutcome:
        """Select a warehouse. None (or 0) clears it; warehouses are optional."""
        return await self._select(flow_id, "warehouse", warehouse_id or None)

    async def select_language(self, flow_id: str, language: str) -> LoginOutcome:
        def choose(flow: LoginFlowState) -> LoginFlowState:
            known = [option.id for option in flow.available_languages]
            if not language or (known and language not in known):
                return flow_ops.with_error(
                    flow,
                    "Select a valid language",
                    ErrorKind.VALIDATION,
                    {"language": "Select a valid language"},
                )
            selected = flow.selected_context.model_copy(update={"language": language})
            return flow_ops.clear_errors(flow).model_copy(update={"selected_context": selected})

        return self._outcome(await self._mutate(flow_id, choose))

    async def _select(self, flow_id: str, stage: str, option_id: int | None) -> LoginOutcome:
        field = f"{stage}_id"
        lookup = _NEXT_LOOKUP.get(stage)

        def choose(flow: LoginFlowState) -> LoginFlowState:
            if flow.current_step != "context-selection":
                return flow_ops.with_error(flow, NOT_SELECTING_CONTEXT_MESSAGE, ErrorKind.VALIDATION)

            if option_id is None and field in REQUIRED_FIELD_MESSAGES:
                message = REQUIRED_FIELD_MESSAGES[field]
                return flow_ops.with_error(flow, message, ErrorKind.VALIDATION, {field: message})

            name = None
            if option_id is not None:
                option = _find(getattr(flow, _SELECTION_LISTS[stage]), option_id)
                if option is None:
                    message = f"Select a valid {stage}"
                    return flow_ops.with_error(flow, message, ErrorKind.VALIDATION, {field: message})
                name = option.name

            flow = flow_ops.clear_downstream(flow_ops.clear_errors(flow), stage)
            selected = flow.selected_context.model_copy(update={field: option_id, f"{stage}_name": name})
            flow = flow.model_copy(update={
                "selected_context": selected,
                "selection_version": flow.selection_version + 1,
            })

            pending = dict(flow.pending_fetches)
            if lookup:
                pending[lookup] = _fetch_key(flow)
            if stage == "client":
                pending["language"] = _fetch_key(flow)
                flow = flow.model_copy(update={"available_languages": []})
            return flow.model_copy(update={"pending_fetches": pending, "is_loading": bool(pending)})

        flow = await self._mutate(flow_id, choose)
        if flow.error:
            return self._outcome(flow)

        logger.info(f"Flow {flow_id[:8]}... selected {stage} {option_id}")
        if lookup:
            flow = await self._lookup(flow_id, flow, lookup)
        if stage == "client":
            flow = await self._lookup(flow_id, flow, "language")
        return self._outcome(flow)

    async def _lookup(self, flow_id: str, flow: LoginFlowState, stage: str) -> LoginFlowState:
        """Fetch the options for ``stage`` and apply them if still wanted."""
        key = flow.pending_fetches.get(stage)
        if key is None:
            return flow

        selected = flow.selected_context
        token = flow.temp_token or ""
        error = None
        try:
            if stage == "role":
                items = await self.erp_client.get_roles(token, selected.client_id)
            elif stage == "organization":
                items = await self.erp_client.get_organizations(token, selected.client_id, selected.role_id)
            elif stage == "warehouse":
                items = await self.erp_client.get_warehouses(
                    token, selected.client_id, selected.role_id, selected.organization_id
                )
            else:
                items = await self.erp_client.get_languages(token, selected.client_id)
        except ErpError as e:
            logger.warning(f"Failed to load {stage} options for flow {flow_id[:8]}...: {e.message}")
            items, error = [], e

        def apply(current: LoginFlowState) -> LoginFlowState:
            if current.pending_fetches.get(stage) != key:
                logger.info(f"Discarding stale {stage} options for flow {flow_id[:8]}...")
                return current
            pending = {name: value for name, value in current.pending_fetches.items() if name != stage}
            updated = current.model_copy(update={
                _LOOKUP_LISTS[stage]: items,
                "pending_fetches": pending,
                "is_loading": bool(pending),
            })
            if error is not None:
                updated = flow_ops.with_error(updated, error.message, error.kind)
                updated = updated.model_copy(update={"is_loading": bool(pending)})
            return updated

        return await self._mutate(flow_id, apply)

    async def submit_context(self, flow_id: str) -> LoginOutcome:
        """Log in again with the selected context and issue the session."""
        flow = await self.get_flow(flow_id)
        if flow.current_step != "context-selection":
            flow = await self._mutate(
                flow_id,
                lambda f: flow_ops.with_error(f, NOT_SELECTING_CONTEXT_MESSAGE, ErrorKind.VALIDATION),
            )
            return self._outcome(flow)

        selected = flow.selected_context
        field_errors = {
            field: message
            for field, message in REQUIRED_FIELD_MESSAGES.items()
            if not getattr(selected, field)
        }
        if field_errors:
            flow = await self._mutate(
                flow_id,
                lambda f: flow_ops.with_error(f, INCOMPLETE_CONTEXT_MESSAGE, ErrorKind.VALIDATION, field_errors),
            )
            return self._outcome(flow)

        flow = await self._mutate(
            flow_id,
            lambda f: flow_ops.clear_errors(f).model_copy(update={"is_loading": True}),
        )

        credentials = Credentials(user_name=flow.temp_user_name, password=flow.temp_password)
        context = ContextSelection(
            client_id=selected.client_id,
            role_id=selected.role_id,
            organization_id=selected.organization_id,
            warehouse_id=selected.warehouse_id,
            language=selected.language,
        )
        logger.info(
            f"Submitting context for user {credentials.user_name}: client {context.client_id}, "
            f"role {context.role_id}, org {context.organization_id}, warehouse {context.warehouse_id or 0}"
        )
        result = await self.erp_client.login(credentials, context)

        if isinstance(result, LoginFailure):
            flow = await self._mutate(flow_id, lambda f: flow_ops.with_error(f, result.error, result.kind))
            return self._outcome(flow)

        if not isinstance(result, LoginSuccess):
            logger.warning(f"iDempiere did not accept the selected context for user {credentials.user_name}")
            flow = await self._mutate(
                flow_id,
                lambda f: flow_ops.with_error(f, CONTEXT_REJECTED_MESSAGE, ErrorKind.VALIDATION),
            )
            return self._outcome(flow)

        return await self._complete(flow, credentials.user_name, result)

    async def back_to_credentials(self, flow_id: str) -> LoginOutcome:
        flow = await self._mutate(flow_id, flow_ops.back_to_credentials)
        logger.info(f"Flow {flow_id[:8]}... returned to credentials")
        return self._outcome(flow)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _complete(self, flow: LoginFlowState, user_name: str, result: LoginSuccess) -> LoginOutcome:
        info = result.session_info
        selected = flow.selected_context

        def name_for(stage: str, option_id: int | None, flow_options, result_options) -> str | None:
            if option_id and getattr(selected, f"{stage}_id") == option_id:
                name = getattr(selected, f"{stage}_name")
                if name:
                    return name
            for options in (flow_options, result_options):
                option = _find(options, option_id)
                if option is not None:
                    return option.name
            return None

        completion = LoginCompletion(
            user_name=user_name,
            token=result.token,
            refresh_token=result.refresh_token,
            user_id=info.user_id,
            client_id=info.client_id,
            client_name=name_for("client", info.client_id, flow.available_clients, result.available_clients),
            role_id=info.role_id,
            role_name=name_for("role", info.role_id, flow.available_roles, result.available_roles),
            organization_id=info.organization_id,
            organization_name=name_for(
                "organization", info.organization_id, flow.available_organizations, result.available_organizations
            ),
            warehouse_id=info.warehouse_id,
            warehouse_name=name_for(
                "warehouse", info.warehouse_id, flow.available_warehouses, result.available_warehouses
            ),
            language=info.language,
        )

        session_id, session = await self.issuer.issue(completion)
        await self._discard(flow.flow_id)
        logger.info(f"User {user_name} signed in; flow {flow.flow_id[:8]}... completed")
        return LoginOutcome(
            step="session-established",
            session_id=session_id,
            session_expires_at=session.session_expires_at,
        )
