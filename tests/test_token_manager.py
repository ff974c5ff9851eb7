import asyncio
import time
from urllib.parse import parse_qs

import httpx
import pytest

from chatrelay.core.account_pool import HealthOutcome
from chatrelay.core.errors import CredentialExpired, NotFound, RefreshFailed
from chatrelay.core.events import OAUTH_PROGRESS
from chatrelay.core.token_manager import TokenState
from chatrelay.models.account import AccountStatus, AccountUpdate

from gateway_test_utils import (
    add_account,
    add_oauth_provider,
    add_provider,
    build_runtime,
    expired_oauth_credentials,
)


def _refresh_failures(runtime):
    return [e for e in runtime.logs.entries() if e.data and e.data.get("error") == "RefreshFailed"]


def test_concurrent_callers_share_one_refresh():
    token_calls = []

    async def handler(request):
        token_calls.append(parse_qs(request.content.decode()))
        await asyncio.sleep(0.05)
        return httpx.Response(200, json={
            "access_token": "new-token",
            "refresh_token": "refresh-2",
            "expires_in": 3600,
        })

    async def _run():
        runtime = build_runtime(handler)
        add_oauth_provider(runtime)
        await add_account(runtime, "a", **expired_oauth_credentials())
        capabilities = await asyncio.gather(*(runtime.tokens.ensure_valid("a") for _ in range(5)))
        credential = await runtime.pool.vault.get("a")
        return runtime, capabilities, credential

    runtime, capabilities, credential = asyncio.run(_run())

    assert len(token_calls) == 1
    assert token_calls[0]["grant_type"] == ["refresh_token"]
    assert token_calls[0]["refresh_token"] == ["refresh-1"]
    assert token_calls[0]["client_id"] == ["client-1"]
    assert all(c.apply({})["Authorization"] == "Bearer new-token" for c in capabilities)
    assert credential.refresh_token.get_secret_value() == "refresh-2"
    assert credential.expires_at > time.time() + 3000
    assert runtime.tokens.state("a") == TokenState.VALID


def test_concurrent_callers_share_one_failed_refresh():
    token_calls = []

    async def handler(request):
        token_calls.append(request)
        await asyncio.sleep(0.05)
        return httpx.Response(400, json={"error": "invalid_grant"})

    async def _run():
        runtime = build_runtime(handler)
        add_oauth_provider(runtime)
        await add_account(runtime, "a", **expired_oauth_credentials())
        results = await asyncio.gather(
            *(runtime.tokens.ensure_valid("a") for _ in range(5)),
            return_exceptions=True,
        )
        return runtime, results

    runtime, results = asyncio.run(_run())

    assert len(token_calls) == 1
    assert all(isinstance(r, RefreshFailed) for r in results)
    assert len(_refresh_failures(runtime)) == 1
    assert runtime.tokens.state("a") == TokenState.REFRESH_FAILED
    assert runtime.pool.get_account("a").status == AccountStatus.OFFLINE


def test_failed_refresh_is_not_retried_until_credential_replaced():
    token_calls = []

    def handler(request):
        token_calls.append(request)
        return httpx.Response(401, text="revoked")

    async def _run():
        runtime = build_runtime(handler)
        add_oauth_provider(runtime)
        await add_account(runtime, "a", **expired_oauth_credentials())
        for _ in range(3):
            with pytest.raises(RefreshFailed):
                await runtime.tokens.ensure_valid("a")
        calls_while_failed = len(token_calls)

        await runtime.pool.update_account("a", AccountUpdate(credentials={
            "access_token": "fresh-token",
            "refresh_token": "refresh-9",
            "expires_in": "3600",
        }))
        runtime.tokens.reset("a")
        capability = await runtime.tokens.ensure_valid("a")
        return runtime, calls_while_failed, capability

    runtime, calls_while_failed, capability = asyncio.run(_run())

    assert calls_while_failed == 1
    assert len(token_calls) == 1
    assert capability.apply({})["Authorization"] == "Bearer fresh-token"
    assert runtime.tokens.state("a") == TokenState.VALID
    assert runtime.pool.get_account("a").status == AccountStatus.UNKNOWN


def test_expired_token_without_refresh_token_is_reported():
    async def _run():
        runtime = build_runtime(lambda request: httpx.Response(500))
        add_oauth_provider(runtime)
        await add_account(runtime, "a", access_token="old", expires_at=str(int(time.time()) - 10))
        with pytest.raises(CredentialExpired) as excinfo:
            await runtime.tokens.ensure_valid("a")
        return excinfo.value

    error = asyncio.run(_run())
    assert not isinstance(error, RefreshFailed)
    assert error.account_id == "a"


def test_valid_token_is_returned_without_refresh():
    def handler(request):
        raise AssertionError("no network call expected")

    async def _run():
        runtime = build_runtime(handler)
        add_provider(runtime, api_key_header="x-api-key")
        await add_account(runtime, "a")
        return await runtime.tokens.ensure_valid("a")

    capability = asyncio.run(_run())
    assert capability.apply({}) == {"x-api-key": "key-a"}
    assert "key-a" not in repr(capability)


def test_successful_refresh_brings_auth_offline_account_back():
    def handler(request):
        return httpx.Response(200, json={"access_token": "new-token", "expires_in": 3600})

    async def _run():
        runtime = build_runtime(handler)
        add_oauth_provider(runtime)
        await add_account(runtime, "a", **expired_oauth_credentials())
        await runtime.pool.mark_health("a", HealthOutcome.AUTH_FAILURE, "rejected")
        offline_before = runtime.pool.get_account("a").status
        await runtime.tokens.refresh("a", force=True)
        return runtime, offline_before

    runtime, offline_before = asyncio.run(_run())
    assert offline_before == AccountStatus.OFFLINE
    assert runtime.pool.get_account("a").status == AccountStatus.UNKNOWN


def test_refresh_expiring_only_touches_tokens_near_expiry():
    refreshed = []

    def handler(request):
        refreshed.append(parse_qs(request.content.decode())["refresh_token"][0])
        return httpx.Response(200, json={"access_token": "new-token", "expires_in": 3600})

    async def _run():
        runtime = build_runtime(handler)
        add_oauth_provider(runtime)
        now = int(time.time())
        await add_account(runtime, "soon", access_token="t1", refresh_token="r-soon",
                          expires_at=str(now + 60))
        await add_account(runtime, "later", access_token="t2", refresh_token="r-later",
                          expires_at=str(now + 7200))
        await add_account(runtime, "no-refresh", access_token="t3", expires_at=str(now + 60))
        return await runtime.tokens.refresh_expiring()

    count = asyncio.run(_run())
    assert count == 1
    assert refreshed == ["r-soon"]


def test_validate_token_has_no_side_effects():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        return httpx.Response(401, text="invalid key")

    async def _run():
        runtime = build_runtime(handler)
        add_provider(runtime)
        await add_account(runtime, "a")
        result = await runtime.tokens.validate_token("a")
        return runtime, result

    runtime, result = asyncio.run(_run())

    assert calls == [("GET", "/v1/models")]
    assert result.valid is False
    assert result.status_code == 401
    assert runtime.pool.get_account("a").status == AccountStatus.UNKNOWN
    assert runtime.tokens.state("a") is None


def test_login_with_token_validates_before_creating_account():
    def handler(request):
        if request.headers.get("Authorization") == "Bearer good":
            return httpx.Response(200, json={"data": []})
        return httpx.Response(401)

    async def _run():
        runtime = build_runtime(handler)
        add_provider(runtime)
        queue = runtime.events.subscribe()
        with pytest.raises(ValueError):
            await runtime.tokens.login_with_token("p1", {"api_key": "bad"}, name="Bad")
        account = await runtime.tokens.login_with_token("p1", {"api_key": "good"}, name="Good")
        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        return runtime, account, events

    runtime, account, events = asyncio.run(_run())

    assert [a.name for a in runtime.pool.list_accounts()] == ["Good"]
    assert account.provider_id == "p1"
    statuses = [e["data"]["status"] for e in events if e["event"] == OAUTH_PROGRESS]
    assert statuses == ["validating", "failed", "validating", "success"]


def test_authorization_code_flow_creates_account():
    def handler(request):
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["code-123"]
        return httpx.Response(200, json={
            "access_token": "issued",
            "refresh_token": "refresh-1",
            "expires_in": 3600,
        })

    async def _run():
        runtime = build_runtime(handler)
        add_oauth_provider(runtime)
        provider = runtime.pool.get_provider("p1")
        provider.authorize_url = "http://auth.test/authorize"
        login = runtime.tokens.start_login("p1", "http://localhost/callback", name="Browser")
        with pytest.raises(NotFound):
            await runtime.tokens.complete_login("unknown-state", "code-123")
        account = await runtime.tokens.complete_login(login["state"], "code-123")
        credential = await runtime.pool.vault.get(account.id)
        return login, account, credential

    login, account, credential = asyncio.run(_run())

    assert login["auth_url"].startswith("http://auth.test/authorize?")
    assert f"state={login['state']}" in login["auth_url"]
    assert account.name == "Browser"
    assert credential.kind == "oauth"
    assert credential.secret.get_secret_value() == "issued"
    assert credential.refresh_token.get_secret_value() == "refresh-1"
