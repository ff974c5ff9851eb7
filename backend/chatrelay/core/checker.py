"""
Provider Checker

Reachability probe for providers, token check for accounts and the credits
lookup shown in the account list.
"""
import asyncio
import time
from typing import Dict, Optional

import httpx
from pydantic import BaseModel

from chatrelay.core import oauth
from chatrelay.core.account_pool import AccountPool, HealthOutcome
from chatrelay.core.token_manager import TokenManager, TokenState
from chatrelay.models.provider import ProviderStatus

CHECK_TIMEOUT = 15.0


class ProviderCheckResult(BaseModel):
    provider_id: str
    status: ProviderStatus
    latency_ms: int
    error: Optional[str] = None


class AccountCheckResult(BaseModel):
    account_id: str
    valid: bool
    status: str
    error: Optional[str] = None


class ProviderChecker:
    def __init__(self, pool: AccountPool, tokens: TokenManager, client: httpx.AsyncClient):
        self._pool = pool
        self._tokens = tokens
        self._client = client

    async def check_provider(self, provider_id: str) -> ProviderCheckResult:
        """Any HTTP answer below 500 counts as reachable; auth is not required here."""
        provider = self._pool.get_provider(provider_id)
        url = provider.base_url.rstrip("/") + (provider.token_check_path or "/models")
        started = time.perf_counter()
        error = None
        try:
            response = await self._client.get(url, headers=provider.headers, timeout=CHECK_TIMEOUT)
            status = ProviderStatus.ONLINE if response.status_code < 500 else ProviderStatus.OFFLINE
            if status == ProviderStatus.OFFLINE:
                error = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            status = ProviderStatus.OFFLINE
            error = str(exc) or "Connection failed"

        latency_ms = int((time.perf_counter() - started) * 1000)
        self._pool.set_provider_status(provider_id, status)
        return ProviderCheckResult(provider_id=provider_id, status=status, latency_ms=latency_ms, error=error)

    async def check_all_providers(self) -> Dict[str, ProviderCheckResult]:
        providers = self._pool.list_providers()
        results = await asyncio.gather(*(self.check_provider(p.id) for p in providers))
        return {result.provider_id: result for result in results}

    async def check_account(self, account_id: str) -> AccountCheckResult:
        """Validate the stored token and update the account's health from the answer."""
        result = await self._tokens.validate_token(account_id)
        valid, error = result.valid, result.error
        if valid and self._tokens.state(account_id) == TokenState.REFRESH_FAILED:
            # Requests would still be refused until the credential is replaced.
            valid, error = False, "Token refresh failed; replace the credential"
        elif valid:
            await self._pool.mark_health(account_id, HealthOutcome.SUCCESS)
        elif result.status_code in (401, 403):
            await self._pool.mark_health(account_id, HealthOutcome.AUTH_FAILURE, result.error)

        account = self._pool.get_account(account_id)
        return AccountCheckResult(
            account_id=account_id,
            valid=valid,
            status=account.status.value,
            error=error,
        )

    async def fetch_credits(self, account_id: str) -> Optional[float]:
        account = self._pool.get_account(account_id)
        provider = self._pool.get_provider(account.provider_id)
        capability = await self._pool.vault.capability(account_id, provider.api_key_header)
        balance = await oauth.fetch_credits(self._client, provider, capability.apply({}))
        if balance is not None:
            await self._pool.set_balance(account_id, balance)
        return balance
