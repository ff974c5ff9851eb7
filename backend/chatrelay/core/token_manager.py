"""
Token Manager

Keeps account credentials usable:
- Refreshes OAuth tokens 5 minutes before expiry
- One in-flight refresh per account; concurrent callers share its result
- A failed refresh takes the account offline until its credential is replaced
- Login helpers (paste a token, or the authorization code flow)
"""
import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import httpx

from chatrelay.core import oauth
from chatrelay.core.account_pool import AccountPool, HealthOutcome, PooledAccount
from chatrelay.core.errors import CredentialExpired, NotFound, RefreshFailed, UpstreamTransportError
from chatrelay.core.events import EventBus, OAUTH_PROGRESS
from chatrelay.core.log_aggregator import LogAggregator
from chatrelay.core.vault import AuthCapability, Credential
from chatrelay.models.account import AccountCreate

logger = logging.getLogger(__name__)

REFRESH_SKEW_SECONDS = 300
PENDING_LOGIN_TTL_SECONDS = 600


class TokenState(str, Enum):
    VALID = "valid"
    REFRESHING = "refreshing"
    REFRESH_FAILED = "refresh_failed"


@dataclass
class PendingLogin:
    provider_id: str
    redirect_uri: str
    name: Optional[str]
    created_at: float


class TokenManager:
    def __init__(
        self,
        pool: AccountPool,
        client: httpx.AsyncClient,
        logs: Optional[LogAggregator] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._pool = pool
        self._vault = pool.vault
        self._client = client
        self._logs = logs or LogAggregator()
        self._events = events
        self._clock = clock
        self._states: Dict[str, TokenState] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._pending: Dict[str, PendingLogin] = {}

    def state(self, account_id: str) -> Optional[TokenState]:
        return self._states.get(account_id)

    def reset(self, account_id: str) -> None:
        """Forget the refresh state of an account, e.g. after its credential was replaced."""
        self._states.pop(account_id, None)

    async def ensure_valid(self, account_id: str) -> AuthCapability:
        """
        Get a usable auth capability for an account.

        Raises:
            RefreshFailed: the token could not be refreshed (now or earlier)
            CredentialExpired: the token expired and there is nothing to refresh it with
            NotFound: no credential stored for the account
        """
        if self._states.get(account_id) == TokenState.REFRESH_FAILED:
            raise RefreshFailed(account_id, "token refresh failed earlier; replace the credential")

        credential = await self._vault.get(account_id)
        if credential.expires_within(REFRESH_SKEW_SECONDS, self._clock()):
            if credential.refresh_token is None:
                raise CredentialExpired(account_id, "token expired and no refresh token is stored")
            return await self.refresh(account_id)

        self._states.setdefault(account_id, TokenState.VALID)
        return self._capability(account_id, credential)

    async def refresh(self, account_id: str, force: bool = False) -> AuthCapability:
        """Refresh an account's token, joining a refresh that is already running."""
        task = self._inflight.get(account_id)
        if task is None:
            task = asyncio.create_task(self._refresh(account_id, force))
            self._inflight[account_id] = task
            task.add_done_callback(lambda done: self._forget_task(account_id, done))

        # A caller that gets cancelled must not cancel the refresh other callers wait on.
        credential = await asyncio.shield(task)
        return self._capability(account_id, credential)

    def _forget_task(self, account_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]

    async def _refresh(self, account_id: str, force: bool) -> Credential:
        account = self._pool.get_account(account_id)
        provider = self._pool.get_provider(account.provider_id)
        self._states[account_id] = TokenState.REFRESHING

        credential = await self._vault.get(account_id)
        if not force and not credential.expires_within(REFRESH_SKEW_SECONDS, self._clock()):
            self._states[account_id] = TokenState.VALID
            return credential

        if credential.refresh_token is None:
            await self._refresh_failed(account, "no refresh token stored")

        logger.info("Refreshing token for account %s", account.name)
        try:
            token = await oauth.refresh_access_token(
                self._client, provider, credential.refresh_token.get_secret_value()
            )
        except (oauth.OAuthError, UpstreamTransportError, httpx.HTTPError, ValueError) as exc:
            await self._refresh_failed(account, str(exc) or exc.__class__.__name__)

        refreshed = Credential(
            kind=credential.kind,
            secret=token.access_token,
            refresh_token=token.refresh_token or credential.refresh_token,
            expires_at=token.expires_at(self._clock()),
            extra=credential.extra,
        )
        await self._vault.put(account_id, refreshed)
        self._states[account_id] = TokenState.VALID
        if account.offline_reason == "auth":
            await self._pool.reinstate(account_id)
        self._logs.info(f"Token refreshed for account {account.name}",
                        account_id=account_id, provider_id=account.provider_id)
        return refreshed

    async def _refresh_failed(self, account: PooledAccount, reason: str) -> None:
        self._states[account.id] = TokenState.REFRESH_FAILED
        await self._pool.mark_health(account.id, HealthOutcome.AUTH_FAILURE, f"Token refresh failed: {reason}")
        self._logs.error(
            f"Token refresh failed for account {account.name}: {reason}",
            account_id=account.id,
            provider_id=account.provider_id,
            data={"error": "RefreshFailed", "reason": reason},
        )
        raise RefreshFailed(account.id, reason)

    async def refresh_expiring(self) -> int:
        """
        Proactively refresh all tokens that will expire within 5 minutes.
        Called by the background scheduler.
        """
        refreshed = 0
        now = self._clock()
        for account in self._pool.list_accounts():
            if self._states.get(account.id) == TokenState.REFRESH_FAILED or not self._vault.has(account.id):
                continue
            credential = await self._vault.get(account.id)
            if credential.refresh_token is None or not credential.expires_within(REFRESH_SKEW_SECONDS, now):
                continue
            try:
                await self.refresh(account.id)
                refreshed += 1
            except CredentialExpired:
                # Already logged and marked offline by the refresh itself.
                continue

        if refreshed:
            logger.info("Refreshed %d expiring tokens", refreshed)
        return refreshed

    def _capability(self, account_id: str, credential: Credential) -> AuthCapability:
        provider = self._pool.get_provider(self._pool.get_account(account_id).provider_id)
        return AuthCapability(account_id, credential, provider.api_key_header)

    # ==================== Validation ====================

    async def validate_token(self, account_id: str) -> oauth.TokenValidation:
        """Check the stored credential against the provider without changing any state."""
        account = self._pool.get_account(account_id)
        provider = self._pool.get_provider(account.provider_id)
        credential = await self._vault.get(account_id)
        headers = AuthCapability(account_id, credential, provider.api_key_header).apply({})
        return await oauth.check_token(self._client, provider, headers)

    async def validate_raw_token(self, provider_id: str, token: str) -> oauth.TokenValidation:
        provider = self._pool.get_provider(provider_id)
        kind = "api_key" if provider.api_key_header else "bearer"
        capability = AuthCapability("-", Credential(kind=kind, secret=token), provider.api_key_header)
        return await oauth.check_token(self._client, provider, capability.apply({}))

    # ==================== Login ====================

    def _progress(self, provider_id: str, status: str, message: str) -> None:
        if self._events is not None:
            self._events.publish(OAUTH_PROGRESS, {
                "provider_id": provider_id,
                "status": status,
                "message": message,
            })

    async def login_with_token(
        self,
        provider_id: str,
        credentials: Dict[str, str],
        name: Optional[str] = None,
        email: Optional[str] = None,
        validate: bool = True,
    ) -> PooledAccount:
        """Create an account from a pasted token after checking it against the provider."""
        provider = self._pool.get_provider(provider_id)
        self._progress(provider_id, "validating", "Validating token")

        if validate:
            token = credentials.get("api_key") or credentials.get("access_token") or credentials.get("token")
            if not token:
                self._progress(provider_id, "failed", "No token supplied")
                raise ValueError("No token supplied")
            result = await self.validate_raw_token(provider_id, token)
            if not result.valid:
                self._progress(provider_id, "failed", result.error or "Token validation failed")
                raise ValueError(f"Token validation failed: {result.error}")

        account = await self._pool.create_account(AccountCreate(
            provider_id=provider_id,
            name=name or f"{provider.name} account",
            email=email,
            credentials=credentials,
        ))
        self._progress(provider_id, "success", f"Account {account.name} added")
        return account

    def start_login(self, provider_id: str, redirect_uri: str, name: Optional[str] = None) -> dict:
        provider = self._pool.get_provider(provider_id)
        self._prune_pending()
        state = secrets.token_urlsafe(32)
        auth_url = oauth.generate_auth_url(provider, redirect_uri, state)
        self._pending[state] = PendingLogin(provider_id, redirect_uri, name, self._clock())
        self._progress(provider_id, "pending", "Waiting for authorization")
        return {"state": state, "auth_url": auth_url}

    async def complete_login(self, state: str, code: str) -> PooledAccount:
        pending = self._pending.pop(state, None)
        if pending is None:
            raise NotFound("Unknown or expired login state")

        provider = self._pool.get_provider(pending.provider_id)
        self._progress(provider.id, "exchanging", "Exchanging authorization code")
        try:
            token = await oauth.exchange_code(self._client, provider, code, pending.redirect_uri)
        except (oauth.OAuthError, UpstreamTransportError) as exc:
            self._progress(provider.id, "failed", str(exc))
            raise

        credentials = {"access_token": token.access_token}
        if token.refresh_token:
            credentials["refresh_token"] = token.refresh_token
        expires_at = token.expires_at(self._clock())
        if expires_at is not None:
            credentials["expires_at"] = str(expires_at)

        account = await self._pool.create_account(AccountCreate(
            provider_id=provider.id,
            name=pending.name or f"{provider.name} account",
            credentials=credentials,
        ))
        self._progress(provider.id, "success", f"Account {account.name} added")
        return account

    def _prune_pending(self) -> None:
        cutoff = self._clock() - PENDING_LOGIN_TTL_SECONDS
        for state in [s for s, p in self._pending.items() if p.created_at < cutoff]:
            del self._pending[state]
