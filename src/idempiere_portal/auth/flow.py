"""State transitions for the multi-step login flow.

Every function returns a new LoginFlowState; the stored flow is only
replaced by the orchestrator under its per-flow lock.
"""

from idempiere_portal.auth.errors import ErrorKind
from idempiere_portal.auth.models import (
    Credentials,
    LoginFlowState,
    LoginNeedsContext,
    SelectedContext,
)

# Later stages are invalidated whenever an earlier one changes.
STAGES = ("client", "role", "organization", "warehouse")

_STAGE_LISTS = {
    "client": "available_clients",
    "role": "available_roles",
    "organization": "available_organizations",
    "warehouse": "available_warehouses",
}


def downstream_of(stage: str) -> tuple[str, ...]:
    return STAGES[STAGES.index(stage) + 1:]


def with_error(
    flow: LoginFlowState,
    message: str,
    kind: ErrorKind | None = None,
    field_errors: dict[str, str] | None = None,
) -> LoginFlowState:
    return flow.model_copy(update={
        "error": message,
        "error_kind": kind,
        "connection_error": message if kind == ErrorKind.NETWORK_UNAVAILABLE else None,
        "field_errors": field_errors or {},
        "is_loading": False,
    })


def clear_errors(flow: LoginFlowState) -> LoginFlowState:
    return flow.model_copy(update={
        "error": None,
        "error_kind": None,
        "connection_error": None,
        "field_errors": {},
    })


def proceed_to_context_selection(
    flow: LoginFlowState,
    credentials: Credentials,
    result: LoginNeedsContext,
) -> LoginFlowState:
    """Keep what the ERP offered and the credentials needed to log in again."""
    flow = clear_errors(flow)
    return flow.model_copy(update={
        "current_step": "context-selection",
        "temp_token": result.token,
        "temp_user_name": credentials.user_name,
        "temp_password": credentials.password,
        "available_clients": result.available_clients,
        "available_roles": result.available_roles,
        "available_organizations": result.available_organizations,
        "available_warehouses": result.available_warehouses,
        "available_languages": [],
        "selected_context": SelectedContext(language=flow.selected_context.language),
        "selection_version": flow.selection_version + 1,
        "pending_fetches": {},
        "is_loading": False,
    })


def clear_downstream(flow: LoginFlowState, stage: str) -> LoginFlowState:
    """Drop the selections and option lists of every stage after ``stage``."""
    selected = flow.selected_context.model_dump()
    update: dict = {}
    for later in downstream_of(stage):
        selected[f"{later}_id"] = None
        selected[f"{later}_name"] = None
        update[_STAGE_LISTS[later]] = []
    pending = {key: value for key, value in flow.pending_fetches.items() if key not in downstream_of(stage)}
    update["selected_context"] = SelectedContext(**selected)
    update["pending_fetches"] = pending
    return flow.model_copy(update=update)


def back_to_credentials(flow: LoginFlowState) -> LoginFlowState:
    """Abort context selection; nothing from the attempt survives."""
    return LoginFlowState(
        flow_id=flow.flow_id,
        temp_user_name=flow.temp_user_name,
        selected_context=SelectedContext(language=flow.selected_context.language),
        selection_version=flow.selection_version + 1,
    )
