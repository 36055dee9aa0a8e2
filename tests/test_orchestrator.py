"""Tests for the multi-step login orchestrator."""

import asyncio

import pytest

from idempiere_portal.auth.errors import ErpError, ErrorKind, LoginFlowNotFound, SERVER_ERROR_MESSAGE
from idempiere_portal.auth.models import (
    ContextOption,
    Credentials,
    LanguageOption,
    LoginFailure,
    LoginNeedsContext,
    LoginSuccess,
    RoleOption,
    SessionInfo,
)
from idempiere_portal.auth.orchestrator import LoginOrchestrator

from conftest import NOW, json_response, make_token

ALICE = Credentials(user_name="alice", password="secret")

CLIENT_A = ContextOption(id=11, name="GardenWorld")
CLIENT_B = ContextOption(id=12, name="Other Tenant")


def needs_context(*clients: ContextOption) -> LoginNeedsContext:
    return LoginNeedsContext(token=make_token(NOW + 900), available_clients=list(clients))


def success(client_id=11, role_id=102, organization_id=50000, warehouse_id=None, **extra) -> LoginSuccess:
    return LoginSuccess(
        token=make_token(NOW + 900),
        session_info=SessionInfo(
            user_id=100,
            client_id=client_id,
            role_id=role_id,
            organization_id=organization_id,
            warehouse_id=warehouse_id,
        ),
        **extra,
    )


def stock_options(fake_erp):
    fake_erp.roles = {
        11: [RoleOption(id=102, name="GardenWorld Admin"), RoleOption(id=103, name="GardenWorld User")],
        12: [RoleOption(id=201, name="Other Admin")],
    }
    fake_erp.organizations = {(11, 102): [ContextOption(id=50000, name="HQ"), ContextOption(id=50001, name="Store")]}
    fake_erp.warehouses = {(11, 102, 50000): [ContextOption(id=103, name="HQ Warehouse")]}
    fake_erp.languages = {11: [LanguageOption(id="en_US", name="English"), LanguageOption(id="es_CO", name="Spanish")]}


@pytest.fixture
async def selecting(orchestrator, fake_erp):
    """A flow that has reached context selection with two clients."""
    stock_options(fake_erp)
    fake_erp.login_results.append(needs_context(CLIENT_A, CLIENT_B))
    flow = await orchestrator.start_flow()
    await orchestrator.submit_credentials(flow.flow_id, ALICE)
    return flow.flow_id


async def test_empty_credentials_are_rejected_without_erp_call(orchestrator, fake_erp):
    flow = await orchestrator.start_flow()

    outcome = await orchestrator.submit_credentials(flow.flow_id, Credentials(user_name="alice", password=""))

    assert outcome.step == "credentials"
    assert outcome.error_kind == ErrorKind.VALIDATION
    assert outcome.field_errors == {"password": "Password is required"}
    assert fake_erp.login_calls == []


async def test_wrong_password_stays_on_credentials(make_erp_client, session_manager, issuer):
    client = make_erp_client(lambda request: json_response(401, {"title": "Unauthorized"}))
    orchestrator = LoginOrchestrator(client, session_manager, issuer)
    flow = await orchestrator.start_flow()

    outcome = await orchestrator.submit_credentials(flow.flow_id, Credentials(user_name="alice", password="wrong"))

    assert outcome.step == "credentials"
    assert outcome.error_kind == ErrorKind.INVALID_CREDENTIALS
    assert outcome.error == "Invalid Credentials"
    stored = await orchestrator.get_flow(flow.flow_id)
    assert stored.temp_password == ""
    assert stored.temp_token is None


async def test_network_failure_sets_connection_error(orchestrator, fake_erp):
    fake_erp.login_results.append(
        LoginFailure(error="unreachable", kind=ErrorKind.NETWORK_UNAVAILABLE, retryable=True)
    )
    flow = await orchestrator.start_flow()

    outcome = await orchestrator.submit_credentials(flow.flow_id, ALICE)

    assert outcome.flow.connection_error == "unreachable"
    assert outcome.step == "credentials"


async def test_two_clients_move_to_context_selection(orchestrator, fake_erp, selecting):
    flow = await orchestrator.get_flow(selecting)

    assert flow.current_step == "context-selection"
    assert len(flow.available_clients) == 2
    assert flow.temp_token
    assert flow.temp_password == "secret"
    assert flow.selected_context.client_id is None


async def test_public_view_hides_password_and_token(orchestrator, selecting):
    flow = await orchestrator.get_flow(selecting)

    dumped = flow.view().model_dump()

    assert "temp_password" not in dumped
    assert "temp_token" not in dumped
    assert "secret" not in flow.view().model_dump_json()


async def test_single_client_is_preselected(orchestrator, fake_erp):
    stock_options(fake_erp)
    fake_erp.login_results.append(needs_context(CLIENT_A))
    flow = await orchestrator.start_flow()

    outcome = await orchestrator.submit_credentials(flow.flow_id, ALICE)

    assert outcome.flow.selected_context.client_id == 11
    assert outcome.flow.selected_context.client_name == "GardenWorld"
    assert [r.id for r in outcome.flow.available_roles] == [102, 103]
    assert [lang.id for lang in outcome.flow.available_languages] == ["en_US", "es_CO"]


async def test_direct_success_issues_session(orchestrator, fake_erp, session_manager):
    fake_erp.login_results.append(
        success(available_clients=[CLIENT_A], available_roles=[RoleOption(id=102, name="GardenWorld Admin")])
    )
    flow = await orchestrator.start_flow()

    outcome = await orchestrator.submit_credentials(flow.flow_id, ALICE)

    assert outcome.is_authenticated
    session = await session_manager.get_session(outcome.session_id)
    assert session.client_name == "GardenWorld"
    assert session.role_name == "GardenWorld Admin"
    assert session.organization_name == "Unknown Org"
    assert session.token_expiry == NOW + 900
    with pytest.raises(LoginFlowNotFound):
        await orchestrator.get_flow(flow.flow_id)


async def test_cascade_clears_later_selections(orchestrator, fake_erp, selecting):
    await orchestrator.select_client(selecting, 11)
    await orchestrator.select_role(selecting, 102)
    await orchestrator.select_organization(selecting, 50000)
    outcome = await orchestrator.select_warehouse(selecting, 103)
    assert outcome.flow.selected_context.warehouse_name == "HQ Warehouse"

    outcome = await orchestrator.select_client(selecting, 12)

    selected = outcome.flow.selected_context
    assert selected.client_id == 12
    assert (selected.role_id, selected.organization_id, selected.warehouse_id) == (None, None, None)
    assert [r.id for r in outcome.flow.available_roles] == [201]
    assert outcome.flow.available_organizations == []
    assert outcome.flow.available_warehouses == []


async def test_role_change_clears_organization_and_warehouse(orchestrator, selecting):
    await orchestrator.select_client(selecting, 11)
    await orchestrator.select_role(selecting, 102)
    await orchestrator.select_organization(selecting, 50000)

    outcome = await orchestrator.select_role(selecting, 103)

    selected = outcome.flow.selected_context
    assert selected.client_id == 11
    assert selected.organization_id is None
    assert selected.warehouse_id is None
    assert outcome.flow.available_warehouses == []


async def test_unknown_option_is_a_field_error(orchestrator, selecting):
    outcome = await orchestrator.select_client(selecting, 999)

    assert outcome.field_errors == {"client_id": "Select a valid client"}
    assert outcome.flow.selected_context.client_id is None


async def test_late_roles_for_superseded_client_are_discarded(orchestrator, fake_erp, selecting):
    gate = asyncio.Event()
    fake_erp.gates[("roles", 11)] = gate

    slow = asyncio.create_task(orchestrator.select_client(selecting, 11))
    while ("roles", 11) not in fake_erp.requests:
        await asyncio.sleep(0)

    await orchestrator.select_client(selecting, 12)
    gate.set()
    await slow

    flow = await orchestrator.get_flow(selecting)
    assert flow.selected_context.client_id == 12
    assert [r.id for r in flow.available_roles] == [201]
    assert flow.pending_fetches == {}


async def test_lookup_failure_sets_error_and_leaves_list_empty(orchestrator, fake_erp, selecting):
    fake_erp.errors["roles"] = ErpError(ErrorKind.SERVER_ERROR, SERVER_ERROR_MESSAGE, 500)

    outcome = await orchestrator.select_client(selecting, 11)

    assert outcome.error == SERVER_ERROR_MESSAGE
    assert outcome.flow.available_roles == []
    assert outcome.flow.selected_context.client_id == 11


async def test_incomplete_context_reports_each_missing_field(orchestrator, fake_erp, selecting):
    await orchestrator.select_client(selecting, 11)
    fake_erp.login_calls.clear()

    outcome = await orchestrator.submit_context(selecting)

    assert outcome.step == "context-selection"
    assert outcome.field_errors == {
        "role_id": "Role is required",
        "organization_id": "Organization is required",
    }
    assert fake_erp.login_calls == []


async def test_submit_without_warehouse_succeeds(orchestrator, fake_erp, selecting, session_manager):
    await orchestrator.select_client(selecting, 11)
    await orchestrator.select_role(selecting, 102)
    await orchestrator.select_organization(selecting, 50000)
    fake_erp.login_results.append(success())

    outcome = await orchestrator.submit_context(selecting)

    assert outcome.is_authenticated
    credentials, context = fake_erp.login_calls[-1]
    assert credentials.password == "secret"
    assert context.to_parameters()["warehouseId"] == 0
    session = await session_manager.get_session(outcome.session_id)
    assert session.client_name == "GardenWorld"
    assert session.role_name == "GardenWorld Admin"
    assert session.organization_name == "HQ"
    assert session.warehouse_id is None


async def test_selected_language_is_sent(orchestrator, fake_erp, selecting, session_manager):
    await orchestrator.select_client(selecting, 11)
    await orchestrator.select_role(selecting, 102)
    await orchestrator.select_organization(selecting, 50000)
    bad = await orchestrator.select_language(selecting, "xx_XX")
    assert bad.field_errors == {"language": "Select a valid language"}
    await orchestrator.select_language(selecting, "es_CO")
    fake_erp.login_results.append(success())

    await orchestrator.submit_context(selecting)

    _, context = fake_erp.login_calls[-1]
    assert context.language == "es_CO"


async def test_context_failure_stays_on_selection(orchestrator, fake_erp, selecting):
    await orchestrator.select_client(selecting, 11)
    await orchestrator.select_role(selecting, 102)
    await orchestrator.select_organization(selecting, 50000)
    fake_erp.login_results.append(LoginFailure(error="Role is locked", kind=ErrorKind.HTTP_ERROR))

    outcome = await orchestrator.submit_context(selecting)

    assert outcome.step == "context-selection"
    assert outcome.error == "Role is locked"
    assert (await orchestrator.get_flow(selecting)).temp_password == "secret"


async def test_back_to_credentials_clears_everything(orchestrator, selecting):
    await orchestrator.select_client(selecting, 11)

    outcome = await orchestrator.back_to_credentials(selecting)

    flow = await orchestrator.get_flow(selecting)
    assert outcome.step == "credentials"
    assert flow.temp_password == ""
    assert flow.temp_token is None
    assert flow.available_clients == []
    assert flow.available_roles == []
    assert flow.selected_context.client_id is None


async def test_selection_outside_context_step_is_rejected(orchestrator):
    flow = await orchestrator.start_flow()

    outcome = await orchestrator.select_client(flow.flow_id, 11)

    assert outcome.step == "credentials"
    assert outcome.error_kind == ErrorKind.VALIDATION


async def test_unknown_flow_raises(orchestrator):
    with pytest.raises(LoginFlowNotFound):
        await orchestrator.submit_credentials("missing", ALICE)


async def test_abandoned_flow_leaves_no_lock_behind(orchestrator, selecting, clock, settings):
    await orchestrator.select_client(selecting, 11)

    clock.advance(settings.login_flow_ttl_seconds + 1)

    with pytest.raises(LoginFlowNotFound):
        await orchestrator.select_role(selecting, 102)
    assert len(orchestrator._locks) == 0
