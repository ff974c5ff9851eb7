import asyncio

import pytest

from chatrelay.core.account_pool import (
    FAIL_THRESHOLD,
    QUOTA_PERIOD_SECONDS,
    RECOVERY_SECONDS,
    AccountPool,
    HealthOutcome,
)
from chatrelay.core.database import create_memory_engine
from chatrelay.core.errors import NotFound
from chatrelay.core.log_aggregator import LogAggregator, LogLevel
from chatrelay.core.vault import CredentialVault
from chatrelay.models.account import AccountCreate, AccountStatus, AccountUpdate
from chatrelay.models.provider import ProviderCreate, ProviderType, ProviderUpdate


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _pool(engine=None, clock=None) -> AccountPool:
    return AccountPool(engine, CredentialVault(engine), LogAggregator(100), clock=clock or FakeClock())


def _provider(pool: AccountPool, provider_id: str = "p1", **extra):
    return pool.create_provider(ProviderCreate(
        id=provider_id,
        name=provider_id.upper(),
        base_url="http://upstream.test/v1",
        supported_models=["test-model"],
        credential_fields=[{"name": "api_key", "label": "API Key"}],
        **extra,
    ))


async def _account(pool: AccountPool, account_id: str, provider_id: str = "p1", daily_quota=None):
    return await pool.create_account(AccountCreate(
        id=account_id,
        provider_id=provider_id,
        name=account_id,
        daily_quota=daily_quota,
        credentials={"api_key": f"key-{account_id}"},
    ))


def test_concurrent_usage_never_exceeds_quota():
    async def _run():
        pool = _pool()
        _provider(pool)
        await _account(pool, "a", daily_quota=5)
        results = await asyncio.gather(*(pool.record_usage("a") for _ in range(20)))
        return pool, results

    pool, results = asyncio.run(_run())

    account = pool.get_account("a")
    assert account.used == 5
    assert max(results) == 5
    assert account.request_count == 20
    assert account.quota_exhausted
    assert pool.list_eligible("p1") == []


def test_eligibility_filters():
    async def _run():
        pool = _pool()
        _provider(pool)
        _provider(pool, "p2")
        await _account(pool, "enabled")
        await _account(pool, "disabled")
        await _account(pool, "offline")
        await _account(pool, "full", daily_quota=1)
        await _account(pool, "other", provider_id="p2")
        await pool.update_account("disabled", AccountUpdate(enabled=False))
        await pool.mark_health("offline", HealthOutcome.AUTH_FAILURE, "rejected")
        await pool.record_usage("full")
        pool.update_provider("p2", ProviderUpdate(enabled=False))
        return pool

    pool = asyncio.run(_run())

    assert [a.id for a in pool.list_eligible("p1")] == ["enabled"]
    assert [a.id for a in pool.list_eligible()] == ["enabled"]


def test_transport_failures_take_account_offline_at_threshold():
    async def _run():
        pool = _pool()
        _provider(pool)
        await _account(pool, "a")
        statuses = []
        for _ in range(FAIL_THRESHOLD):
            await pool.mark_health("a", HealthOutcome.TRANSPORT_FAILURE, "connection refused")
            statuses.append(pool.get_account("a").status)
        return pool, statuses

    pool, statuses = asyncio.run(_run())

    assert statuses[:-1] == [AccountStatus.UNKNOWN] * (FAIL_THRESHOLD - 1)
    assert statuses[-1] == AccountStatus.OFFLINE
    account = pool.get_account("a")
    assert account.offline_reason == "transport"
    assert account.error_message == "connection refused"
    warnings = [e for e in pool._logs.entries() if e.level == LogLevel.WARN]
    assert len(warnings) == 1
    assert "consecutive failures" in warnings[0].message


def test_success_resets_failure_count():
    async def _run():
        pool = _pool()
        _provider(pool)
        await _account(pool, "a")
        await pool.mark_health("a", HealthOutcome.TRANSPORT_FAILURE, "timeout")
        await pool.mark_health("a", HealthOutcome.TRANSPORT_FAILURE, "timeout")
        await pool.mark_health("a", HealthOutcome.SUCCESS)
        await pool.mark_health("a", HealthOutcome.TRANSPORT_FAILURE, "timeout")
        return pool

    pool = asyncio.run(_run())
    account = pool.get_account("a")
    assert account.status == AccountStatus.ONLINE
    assert account.consecutive_failures == 1


def test_transport_offline_accounts_recover_after_delay():
    clock = FakeClock()

    async def _run():
        pool = _pool(clock=clock)
        _provider(pool)
        await _account(pool, "flaky")
        await _account(pool, "revoked")
        for _ in range(FAIL_THRESHOLD):
            await pool.mark_health("flaky", HealthOutcome.TRANSPORT_FAILURE, "timeout")
        await pool.mark_health("revoked", HealthOutcome.AUTH_FAILURE, "invalid key")

        clock.now += RECOVERY_SECONDS - 1
        early = await pool.recover_offline()
        clock.now += 1
        recovered = await pool.recover_offline()
        return pool, early, recovered

    pool, early, recovered = asyncio.run(_run())

    assert early == 0
    assert recovered == 1
    assert pool.get_account("flaky").status == AccountStatus.UNKNOWN
    assert pool.get_account("flaky").consecutive_failures == 0
    assert pool.get_account("revoked").status == AccountStatus.OFFLINE


def test_new_credentials_bring_auth_offline_account_back():
    async def _run():
        pool = _pool()
        _provider(pool)
        await _account(pool, "a")
        await pool.mark_health("a", HealthOutcome.AUTH_FAILURE, "invalid key")
        await pool.update_account("a", AccountUpdate(credentials={"api_key": "replacement"}))
        credential = await pool.vault.get("a")
        return pool, credential

    pool, credential = asyncio.run(_run())
    assert pool.get_account("a").status == AccountStatus.UNKNOWN
    assert pool.get_account("a").error_message is None
    assert credential.secret.get_secret_value() == "replacement"


def test_quota_reset_after_period():
    clock = FakeClock()

    async def _run():
        pool = _pool(clock=clock)
        _provider(pool)
        await _account(pool, "a", daily_quota=3)
        for _ in range(3):
            await pool.record_usage("a")
        clock.now += QUOTA_PERIOD_SECONDS - 10
        early = await pool.reset_quotas()
        clock.now += 10
        reset = await pool.reset_quotas()
        return pool, early, reset

    pool, early, reset = asyncio.run(_run())

    assert early == 0
    assert reset == 1
    account = pool.get_account("a")
    assert account.used == 0
    assert account.last_reset == int(clock.now)
    assert [a.id for a in pool.list_eligible()] == ["a"]


def test_lowering_quota_clamps_usage():
    async def _run():
        pool = _pool()
        _provider(pool)
        await _account(pool, "a", daily_quota=10)
        await pool.record_usage("a", 8)
        return await pool.update_account("a", AccountUpdate(daily_quota=5))

    account = asyncio.run(_run())
    assert account.used == 5


def test_create_account_validation():
    async def _run():
        pool = _pool()
        _provider(pool)
        with pytest.raises(ValueError, match="api_key"):
            await pool.create_account(AccountCreate(provider_id="p1", name="x", credentials={}))
        with pytest.raises(ValueError, match="daily_quota"):
            await _account(pool, "a", daily_quota=0)
        with pytest.raises(NotFound):
            await _account(pool, "b", provider_id="missing")
        await _account(pool, "c")
        with pytest.raises(ValueError, match="already exists"):
            await _account(pool, "c")
        return pool

    pool = asyncio.run(_run())
    assert [a.id for a in pool.list_accounts()] == ["c"]


def test_delete_account_removes_credential():
    async def _run():
        pool = _pool()
        _provider(pool)
        await _account(pool, "a")
        deleted = await pool.delete_account("a")
        missing = await pool.delete_account("a")
        return pool, deleted, missing

    pool, deleted, missing = asyncio.run(_run())
    assert deleted is True
    assert missing is False
    assert not pool.vault.has("a")
    with pytest.raises(NotFound):
        pool.get_account("a")


def test_delete_provider_cascades_to_accounts():
    async def _run():
        pool = _pool()
        _provider(pool)
        _provider(pool, "p2")
        await _account(pool, "a")
        await _account(pool, "b", provider_id="p2")
        await pool.delete_provider("p1")
        return pool

    pool = asyncio.run(_run())
    assert [a.id for a in pool.list_accounts()] == ["b"]
    assert not pool.vault.has("a")
    with pytest.raises(NotFound):
        pool.get_provider("p1")


def test_builtin_providers_only_toggle_enabled():
    pool = _pool()
    pool.seed_builtins()

    deepseek = pool.get_provider("deepseek")
    assert deepseek.type == ProviderType.BUILTIN

    with pytest.raises(ValueError, match="built-in"):
        pool.update_provider("deepseek", ProviderUpdate(base_url="http://elsewhere.test"))
    assert pool.update_provider("deepseek", ProviderUpdate(enabled=False)).enabled is False
    assert pool.seed_builtins() == 0


def test_custom_provider_ids_and_validation():
    pool = _pool()
    first = pool.create_provider(ProviderCreate(name="My Gateway", base_url="https://gw.test/v1"))
    second = pool.create_provider(ProviderCreate(name="My Gateway", base_url="https://gw.test/v1"))

    assert first.id == "my-gateway"
    assert second.id.startswith("my-gateway-")
    assert first.type == ProviderType.CUSTOM

    with pytest.raises(ValueError):
        pool.create_provider(ProviderCreate(name="Bad", base_url="ftp://gw.test"))
    with pytest.raises(ValueError):
        pool.create_provider(ProviderCreate(id="my-gateway", name="Again", base_url="https://gw.test"))


def test_state_survives_reload():
    engine = create_memory_engine()

    async def _run():
        pool = _pool(engine)
        pool.seed_builtins()
        _provider(pool)
        await _account(pool, "a", daily_quota=10)
        await _account(pool, "b")
        await pool.record_usage("a", 4)
        await pool.mark_health("b", HealthOutcome.AUTH_FAILURE, "revoked")

        reloaded = _pool(engine)
        reloaded.vault.load()
        reloaded.load()
        credential = await reloaded.vault.get("a")
        return reloaded, credential

    reloaded, credential = asyncio.run(_run())

    assert reloaded.get_account("a").used == 4
    assert reloaded.get_account("a").daily_quota == 10
    assert reloaded.get_account("b").status == AccountStatus.OFFLINE
    assert reloaded.get_account("b").offline_reason == "auth"
    assert reloaded.get_provider("p1").supported_models == ["test-model"]
    assert credential.secret.get_secret_value() == "key-a"
    assert {p.id for p in reloaded.list_providers()} >= {"deepseek", "glm", "kimi", "qwen", "minimax", "p1"}
