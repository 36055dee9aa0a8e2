"""Tests for session storage, the lazy expiry rewrite and the signed cookie."""

import asyncio
import time

import pytest

from idempiere_portal.config import Settings
from idempiere_portal.auth.models import ErpSession, SessionUpdate
from idempiere_portal.auth.session import InMemorySessionStore, SessionManager

from conftest import NOW


def make_session(token_expiry: int = NOW + 900, **overrides) -> ErpSession:
    fields = dict(
        user_id="100",
        user_name="alice",
        email="alice@example.com",
        idempiere_token="erp-token",
        token_expiry=token_expiry,
        client_id=11,
        client_name="GardenWorld",
        role_id=102,
        role_name="GardenWorld Admin",
        organization_id=50000,
        organization_name="HQ",
        session_expires_at=NOW + 3600,
        created_at=NOW,
    )
    fields.update(overrides)
    return ErpSession(**fields)


def test_secret_key_is_required(settings):
    with pytest.raises(ValueError):
        SessionManager(settings.model_copy(update={"session_secret_key": ""}))


async def test_store_returns_copies(clock):
    store = InMemorySessionStore(clock=clock)
    await store.save_session("sid", make_session(), ttl_seconds=60)

    first = await store.get_session("sid")
    first.user_name = "mallory"

    assert (await store.get_session("sid")).user_name == "alice"


async def test_store_entries_expire(clock):
    store = InMemorySessionStore(clock=clock)
    await store.save_session("sid", make_session(), ttl_seconds=60)

    clock.advance(61)

    assert await store.get_session("sid") is None


async def test_valid_session_is_returned_unchanged(session_manager):
    session_id = await session_manager.create_session(make_session())

    session = await session_manager.get_session(session_id)

    assert session.idempiere_token == "erp-token"
    assert session.is_token_valid(NOW)


async def test_expired_token_is_blanked_on_read(session_manager, clock):
    session_id = await session_manager.create_session(make_session(token_expiry=NOW + 10))

    clock.advance(10)
    session = await session_manager.get_session(session_id)

    assert session.idempiere_token == ""
    assert session.token_expiry == 0
    assert not session.is_token_valid(clock.now)
    # The rewrite is persisted, not just returned
    assert (await session_manager.get_session(session_id)).token_expiry == 0


async def test_update_changes_language_and_renews_envelope(session_manager, clock, settings):
    session_id = await session_manager.create_session(make_session())

    clock.advance(600)
    updated = await session_manager.update_session(session_id, SessionUpdate(language="es_CO"))

    assert updated.language == "es_CO"
    assert updated.user_name == "alice"
    assert updated.session_expires_at == clock.now + settings.session_ttl_seconds


async def test_concurrent_updates_are_serialized(session_manager):
    session_id = await session_manager.create_session(make_session())

    await asyncio.gather(
        session_manager.update_session(session_id, SessionUpdate(language="es_CO")),
        session_manager.update_session(session_id, SessionUpdate(user_name="Alice A.")),
    )

    session = await session_manager.get_session(session_id)
    assert session.language == "es_CO"
    assert session.user_name == "Alice A."


async def test_update_unknown_session_returns_none(session_manager):
    assert await session_manager.update_session("missing", SessionUpdate(language="es_CO")) is None


async def test_invalidate_keeps_session_without_token(session_manager):
    session_id = await session_manager.create_session(make_session())

    await session_manager.invalidate_session(session_id)

    session = await session_manager.get_session(session_id)
    assert session is not None
    assert session.idempiere_token == ""


async def test_delete_is_idempotent(session_manager):
    session_id = await session_manager.create_session(make_session())

    await asyncio.gather(
        session_manager.delete_session(session_id),
        session_manager.delete_session(session_id),
    )

    assert await session_manager.get_session(session_id) is None


def test_view_never_exposes_tokens():
    view = make_session(refresh_token="erp-refresh").view(NOW)

    dumped = view.model_dump()
    assert "idempiere_token" not in dumped
    assert "refresh_token" not in dumped
    assert "erp-token" not in view.model_dump_json()
    assert view.needs_refresh is False


def test_needs_refresh_inside_five_minutes():
    session = make_session(token_expiry=NOW + 299)

    assert session.needs_refresh(NOW)
    assert session.is_token_valid(NOW)


def test_signed_cookie_round_trip(settings):
    manager = SessionManager(settings)

    value = manager.encode_cookie("sid-123", int(time.time()) + 60)

    assert manager.decode_cookie(value) == "sid-123"


def test_tampered_or_expired_cookie_is_rejected(settings):
    manager = SessionManager(settings)
    other = SessionManager(Settings(_env_file=None, session_secret_key="another-secret"))

    assert manager.decode_cookie(other.encode_cookie("sid-123", int(time.time()) + 60)) is None
    assert manager.decode_cookie(manager.encode_cookie("sid-123", int(time.time()) - 1)) is None
    assert manager.decode_cookie("sid-123") is None
    assert manager.decode_cookie(None) is None


async def test_login_flows_expire(session_manager, clock, settings):
    flow = await session_manager.create_login_flow()

    assert (await session_manager.get_login_flow(flow.flow_id)).flow_id == flow.flow_id

    clock.advance(settings.login_flow_ttl_seconds + 1)
    assert await session_manager.get_login_flow(flow.flow_id) is None


async def test_locks_are_dropped_once_sessions_expire(session_manager, clock, settings):
    session_id = await session_manager.create_session(make_session(session_expires_at=NOW + 60))

    clock.advance(61)

    assert await session_manager.get_session(session_id) is None
    assert await session_manager.update_session(session_id, SessionUpdate(language="es_CO")) is None
    assert len(session_manager._locks) == 0


def test_lock_is_shared_while_held(session_manager):
    lock = session_manager._lock("sid")

    assert session_manager._lock("sid") is lock
    del lock
    assert "sid" not in session_manager._locks


async def test_flow_password_is_stored_encrypted(settings, clock):
    store = InMemorySessionStore(clock=clock)
    manager = SessionManager(settings, store=store, clock=clock)
    flow = await manager.create_login_flow()

    await manager.save_login_flow(flow.model_copy(update={"temp_password": "secret"}))

    stored = await store.get_login_flow(flow.flow_id)
    assert stored.temp_password
    assert "secret" not in stored.model_dump_json()
    assert (await manager.get_login_flow(flow.flow_id)).temp_password == "secret"


async def test_flow_password_sealed_with_another_key_is_dropped(settings, clock):
    store = InMemorySessionStore(clock=clock)
    writer = SessionManager(settings, store=store, clock=clock)
    reader = SessionManager(settings.model_copy(update={"session_secret_key": "rotated"}), store=store, clock=clock)
    flow = await writer.create_login_flow()
    await writer.save_login_flow(flow.model_copy(update={"temp_password": "secret"}))

    assert (await reader.get_login_flow(flow.flow_id)).temp_password == ""
