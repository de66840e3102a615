from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from collector.enedis_auth import TokenSupplier
from collector.errors import CredentialError, PersistenceError, ValidationError
from collector.retry import RetryPolicy

from conftest import SleepRecorder, mock_client

TOKEN_URL = "https://enedis.test/oauth2/v3/token"


def token_row(access_token, expires_in_s, created_ago_s=0, active=True):
    now = datetime.now(timezone.utc)
    created = now - timedelta(seconds=created_ago_s)
    return {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in_s,
        "created_at": created.isoformat(),
        "expires_at": (created + timedelta(seconds=expires_in_s)).isoformat(),
        "is_active": active,
    }


def make_supplier(store, handler, sleeper=None):
    sleeper = sleeper or SleepRecorder()
    return TokenSupplier(
        store,
        client_id="client-id",
        client_secret="client-secret",
        token_url=TOKEN_URL,
        retry=RetryPolicy(
            attempts=3, base_delay=1.0, max_delay=10.0, jitter=True, not_found_as_empty=False, sleep=sleeper
        ),
        client=mock_client(handler),
    )


def flaky_token_endpoint(failures, calls):
    def handler(request):
        calls.append(request)
        if len(calls) <= failures:
            return httpx.Response(500, text="upstream down")
        return httpx.Response(200, json={
            "access_token": "fresh-token",
            "token_type": "Bearer",
            "expires_in": 12600,
            "scope": "am_application_scope default",
        })
    return handler


@pytest.mark.asyncio
async def test_valid_cached_token_is_reused(store):
    store.tokens.append(dict(token_row("cached-token", 3600), id=1))

    def handler(request):
        raise AssertionError("token endpoint must not be called")

    supplier = make_supplier(store, handler)
    assert await supplier.get_token() == "cached-token"


@pytest.mark.asyncio
async def test_token_inside_safety_margin_is_refreshed(store):
    # 60 s left is below the 2-minute margin
    store.tokens.append(dict(token_row("almost-expired", 3600, created_ago_s=3540), id=1))
    calls = []

    supplier = make_supplier(store, flaky_token_endpoint(0, calls))
    assert await supplier.get_token() == "fresh-token"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_expired_token_refresh_retries_then_stores_single_active_row(store):
    store.tokens.append(dict(token_row("old-token", 3600, created_ago_s=7200), id=1))
    calls = []
    sleeper = SleepRecorder()

    supplier = make_supplier(store, flaky_token_endpoint(2, calls), sleeper)
    token = await supplier.get_token()

    assert token == "fresh-token"
    assert len(calls) == 3
    assert len(sleeper.calls) == 2
    assert 1.0 <= sleeper.calls[0] <= 2.0
    assert 2.0 <= sleeper.calls[1] <= 3.0

    active = [row for row in store.tokens if row["is_active"]]
    assert len(active) == 1
    assert active[0]["access_token"] == "fresh-token"


@pytest.mark.asyncio
async def test_exchange_sends_client_credentials(store):
    calls = []
    supplier = make_supplier(store, flaky_token_endpoint(0, calls))
    await supplier.refresh()

    params = calls[0].url.params
    assert calls[0].method == "POST"
    assert params["grant_type"] == "client_credentials"
    assert params["client_id"] == "client-id"
    assert params["client_secret"] == "client-secret"


@pytest.mark.asyncio
async def test_exchange_failure_raises_credential_error(store):
    calls = []
    supplier = make_supplier(store, flaky_token_endpoint(10, calls))

    with pytest.raises(CredentialError):
        await supplier.get_token()
    assert len(calls) == 3
    assert store.tokens == []


@pytest.mark.asyncio
async def test_malformed_token_response_is_a_credential_error(store):
    def handler(request):
        return httpx.Response(200, json={"token_type": "Bearer"})

    supplier = make_supplier(store, handler)
    with pytest.raises(CredentialError):
        await supplier.get_token()


@pytest.mark.asyncio
async def test_get_token_returns_token_even_if_it_cannot_be_stored(store):
    store.fail_insert = True
    supplier = make_supplier(store, flaky_token_endpoint(0, []))

    assert await supplier.get_token() == "fresh-token"


@pytest.mark.asyncio
async def test_refresh_surfaces_storage_failure(store):
    store.fail_insert = True
    supplier = make_supplier(store, flaky_token_endpoint(0, []))

    with pytest.raises(PersistenceError):
        await supplier.refresh()


@pytest.mark.asyncio
async def test_refresh_keeps_recent_token_history(store):
    for i in range(6):
        store.tokens.append(dict(token_row(f"token-{i}", 3600, created_ago_s=100 * (i + 1), active=False), id=i + 1))
    supplier = make_supplier(store, flaky_token_endpoint(0, []))

    credential = await supplier.refresh()

    assert len(store.tokens) == 5
    assert credential.is_valid()
    assert [row["access_token"] for row in store.tokens if row["is_active"]] == ["fresh-token"]


@pytest.mark.asyncio
async def test_refresh_token_grant_is_posted_as_form(store):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"access_token": "user-token", "refresh_token": "next-refresh"})

    data = await make_supplier(store, handler).exchange_refresh_token("old-refresh")

    form = parse_qs(seen[0].content.decode())
    assert seen[0].method == "POST"
    assert form == {
        "grant_type": ["refresh_token"],
        "client_id": ["client-id"],
        "client_secret": ["client-secret"],
        "refresh_token": ["old-refresh"],
    }
    assert data["refresh_token"] == "next-refresh"
    assert store.tokens == []


@pytest.mark.asyncio
async def test_refused_refresh_token_reports_partner_description(store):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Refresh token expired"})

    with pytest.raises(CredentialError) as exc_info:
        await make_supplier(store, handler).exchange_refresh_token("old-refresh")

    assert exc_info.value.message == "Refresh token expired"
    assert exc_info.value.details["error"] == "invalid_grant"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_refresh_token_is_required(store):
    supplier = make_supplier(store, lambda request: httpx.Response(500))

    with pytest.raises(ValidationError):
        await supplier.exchange_refresh_token("")
