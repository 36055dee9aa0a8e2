"""Tests for token expiry decoding and session issuance."""

import math

import pytest

from idempiere_portal.auth.claims import decode_token_expiry, safe_number, safe_string
from idempiere_portal.auth.models import LoginCompletion

from conftest import NOW, make_token


@pytest.mark.parametrize("exp", [0, NOW, NOW + 1, 4_102_444_800])
def test_decodes_exp_claim(exp):
    assert decode_token_expiry(make_token(exp), now=NOW) == exp


@pytest.mark.parametrize(
    "token",
    [
        "",
        "not-a-jwt",
        "only.two",
        "a.b.c.d",
        "header.%%%%.signature",
        "eyJhbGciOiJIUzI1NiJ9.bm90LWpzb24.sig",
    ],
)
def test_malformed_token_falls_back_to_one_hour(token):
    assert decode_token_expiry(token, now=NOW) == NOW + 3600


def test_missing_or_non_numeric_exp_falls_back():
    assert decode_token_expiry(make_token(None, sub="alice"), now=NOW) == NOW + 3600
    assert decode_token_expiry(make_token(None, exp="soon"), now=NOW) == NOW + 3600


@pytest.mark.parametrize(
    "value,expected",
    [(None, 0), ("undefined", 0), ("null", 0), (math.nan, 0), ("abc", 0), ("42", 42), (42, 42), (True, 0)],
)
def test_safe_number(value, expected):
    assert safe_number(value) == expected


@pytest.mark.parametrize("value,expected", [(None, "x"), ("undefined", "x"), ("null", "x"), ("HQ", "HQ")])
def test_safe_string(value, expected):
    assert safe_string(value, "x") == expected


def test_build_fills_placeholders(issuer, settings):
    completion = LoginCompletion(
        user_name="alice",
        token=make_token(NOW + 900),
        client_id="undefined",
        role_id="102",
        organization_id=50000,
        warehouse_id=0,
        language=None,
    )

    session = issuer.build(completion, now=NOW)

    assert session.user_id == "alice"
    assert session.email == "alice@example.com"
    assert session.token_expiry == NOW + 900
    assert session.client_id == 0
    assert session.client_name == "Unknown Client"
    assert session.role_id == 102
    assert session.role_name == "User"
    assert session.organization_name == "Unknown Org"
    assert session.warehouse_id is None
    assert session.warehouse_name is None
    assert session.language == "en_US"
    assert session.session_expires_at == NOW + settings.session_ttl_seconds


async def test_issue_persists_session(issuer, session_manager):
    completion = LoginCompletion(
        user_name="alice",
        token=make_token(NOW + 900),
        user_id=100,
        client_id=11,
        client_name="GardenWorld",
        role_id=102,
        role_name="GardenWorld Admin",
        organization_id=50000,
        organization_name="HQ",
        warehouse_id=103,
        warehouse_name="HQ Warehouse",
        language="es_CO",
    )

    session_id, session = await issuer.issue(completion)

    stored = await session_manager.get_session(session_id)
    assert stored == session
    assert stored.user_id == "100"
    assert stored.warehouse_name == "HQ Warehouse"
    assert stored.language == "es_CO"
