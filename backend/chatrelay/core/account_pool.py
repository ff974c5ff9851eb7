"""
Account Pool

In-memory registry of providers and accounts with write-through persistence.

- Eligibility: enabled, not offline, under quota, provider enabled
- Usage counting clamped to the daily quota (per-account lock)
- Health tracking: 3 consecutive transport failures or one auth failure
  take an account offline; transport-offline accounts recover after 60s
- Rolling 24h quota reset
"""
import asyncio
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from sqlmodel import Session, select

from chatrelay.core.builtin_providers import build_builtin_providers
from chatrelay.core.errors import NotFound
from chatrelay.core.log_aggregator import LogAggregator
from chatrelay.core.vault import Credential, CredentialVault
from chatrelay.models.account import Account, AccountCreate, AccountRead, AccountStatus, AccountUpdate
from chatrelay.models.provider import (
    AuthType,
    Provider,
    ProviderBase,
    ProviderCreate,
    ProviderStatus,
    ProviderType,
    ProviderUpdate,
)

logger = logging.getLogger(__name__)

FAIL_THRESHOLD = 3
RECOVERY_SECONDS = 60
QUOTA_PERIOD_SECONDS = 24 * 60 * 60

EXPORTED_PROVIDER_FIELDS = tuple(
    name for name in ProviderBase.model_fields if name not in ("type", "client_secret")
)


class HealthOutcome(str, Enum):
    SUCCESS = "success"
    TRANSPORT_FAILURE = "transport_failure"
    AUTH_FAILURE = "auth_failure"


@dataclass
class PooledAccount:
    """Live state of one account. The trailing fields are never persisted."""
    id: str
    provider_id: str
    name: str
    email: Optional[str] = None
    enabled: bool = True
    status: AccountStatus = AccountStatus.UNKNOWN
    daily_quota: Optional[int] = None
    used: int = 0
    last_reset: int = field(default_factory=lambda: int(time.time()))
    balance: Optional[float] = None
    request_count: int = 0
    last_used: Optional[int] = None
    error_message: Optional[str] = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))

    consecutive_failures: int = 0
    offline_reason: Optional[str] = None  # transport / auth
    offline_since: Optional[float] = None

    @property
    def quota_exhausted(self) -> bool:
        return self.daily_quota is not None and self.used >= self.daily_quota

    @classmethod
    def from_record(cls, record: Account) -> "PooledAccount":
        account = cls(**{name: getattr(record, name) for name in Account.model_fields})
        if account.status == AccountStatus.OFFLINE:
            # No failure history survives a restart; an offline account waits for new credentials.
            account.offline_reason = "auth"
        return account

    def to_record(self) -> Account:
        return Account(**{name: getattr(self, name) for name in Account.model_fields})

    def to_read(self, weight: int = 1, token_state: Optional[str] = None) -> AccountRead:
        data = {k: v for k, v in asdict(self).items() if k in AccountRead.model_fields}
        return AccountRead(**data, weight=weight, token_state=token_state)


def _slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "provider"


class AccountPool:
    def __init__(
        self,
        engine=None,
        vault: Optional[CredentialVault] = None,
        logs: Optional[LogAggregator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self._vault = vault or CredentialVault(engine)
        self._logs = logs or LogAggregator()
        self._clock = clock
        self._providers: Dict[str, Provider] = {}
        self._accounts: Dict[str, PooledAccount] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def vault(self) -> CredentialVault:
        return self._vault

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    def load(self) -> int:
        """Load providers and accounts from the database and seed missing builtins."""
        if self._engine is not None:
            with Session(self._engine) as session:
                for provider in session.exec(select(Provider)).all():
                    self._providers[provider.id] = provider
                for record in session.exec(select(Account)).all():
                    self._accounts[record.id] = PooledAccount.from_record(record)
        self.seed_builtins()
        logger.info("Account pool loaded: %d providers, %d accounts",
                    len(self._providers), len(self._accounts))
        return len(self._accounts)

    def seed_builtins(self) -> int:
        added = 0
        for provider in build_builtin_providers():
            if provider.id not in self._providers:
                self._providers[provider.id] = provider
                self._save_provider(provider)
                added += 1
        return added

    # ==================== Providers ====================

    def list_providers(self) -> List[Provider]:
        return list(self._providers.values())

    def get_provider(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise NotFound(f"Provider not found: {provider_id}")
        return provider

    def create_provider(self, data: ProviderCreate) -> Provider:
        if not data.name or not data.name.strip():
            raise ValueError("Provider name must not be empty")
        if not data.base_url.startswith(("http://", "https://")):
            raise ValueError("Provider base_url must start with http:// or https://")

        provider_id = data.id or _slugify(data.name)
        if provider_id in self._providers:
            if data.id:
                raise ValueError(f"Provider already exists: {provider_id}")
            provider_id = f"{provider_id}-{uuid.uuid4().hex[:6]}"

        values = data.model_dump(exclude={"id", "type"})
        provider = Provider(id=provider_id, type=ProviderType.CUSTOM, **values)
        self._providers[provider_id] = provider
        self._save_provider(provider)
        self._logs.info(f"Created provider: {provider.name}", provider_id=provider_id)
        return provider

    def update_provider(self, provider_id: str, data: ProviderUpdate) -> Provider:
        provider = self.get_provider(provider_id)
        updates = data.model_dump(exclude_unset=True)
        if provider.type == ProviderType.BUILTIN and set(updates) - {"enabled"}:
            raise ValueError("Cannot modify built-in provider")
        if "base_url" in updates and not str(updates["base_url"]).startswith(("http://", "https://")):
            raise ValueError("Provider base_url must start with http:// or https://")

        for key, value in updates.items():
            setattr(provider, key, value)
        provider.updated_at = int(self._clock())
        self._save_provider(provider)
        self._logs.info(f"Updated provider: {provider.name}", provider_id=provider_id)
        return provider

    async def delete_provider(self, provider_id: str) -> bool:
        provider = self._providers.get(provider_id)
        if provider is None:
            return False
        for account in self.list_accounts(provider_id):
            await self.delete_account(account.id)
        del self._providers[provider_id]
        self._delete_row(Provider, provider_id)
        self._logs.info(f"Deleted provider: {provider.name}", provider_id=provider_id)
        return True

    def export_provider(self, provider_id: str) -> dict:
        """Portable provider definition: no id, status or client secret."""
        provider = self.get_provider(provider_id)
        return provider.model_dump(include=set(EXPORTED_PROVIDER_FIELDS))

    def import_provider(self, data: dict) -> Provider:
        """
        Create a custom provider from an exported definition.

        Raises:
            ValueError: the definition is not a valid provider
        """
        definition = {k: v for k, v in data.items() if k in EXPORTED_PROVIDER_FIELDS}
        return self.create_provider(ProviderCreate.model_validate(definition))

    def duplicate_provider(self, provider_id: str, name: Optional[str] = None) -> Provider:
        definition = self.export_provider(provider_id)
        definition["name"] = name or f"{definition['name']} (Copy)"
        return self.import_provider(definition)

    def set_provider_status(self, provider_id: str, status: ProviderStatus) -> Provider:
        provider = self.get_provider(provider_id)
        provider.status = status
        provider.last_status_check = int(self._clock())
        self._save_provider(provider)
        return provider

    # ==================== Accounts ====================

    def list_accounts(self, provider_id: Optional[str] = None) -> List[PooledAccount]:
        return [
            a for a in self._accounts.values()
            if provider_id is None or a.provider_id == provider_id
        ]

    def get_account(self, account_id: str) -> PooledAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFound(f"Account not found: {account_id}")
        return account

    async def create_account(self, data: AccountCreate) -> PooledAccount:
        provider = self.get_provider(data.provider_id)
        credential = self._build_credential(provider, data.credentials)
        if data.daily_quota is not None and data.daily_quota < 1:
            raise ValueError("daily_quota must be at least 1")

        account_id = data.id or uuid.uuid4().hex
        if account_id in self._accounts:
            raise ValueError(f"Account already exists: {account_id}")

        account = PooledAccount(
            id=account_id,
            provider_id=provider.id,
            name=data.name,
            email=data.email,
            enabled=data.enabled,
            daily_quota=data.daily_quota,
            last_reset=int(self._clock()),
        )
        await self._vault.put(account_id, credential)
        self._accounts[account_id] = account
        self._save_account(account)
        self._logs.info(f"Created account: {account.name}", account_id=account_id, provider_id=provider.id)
        return account

    async def update_account(self, account_id: str, data: AccountUpdate) -> PooledAccount:
        account = self.get_account(account_id)
        updates = data.model_dump(exclude_unset=True)
        credentials = updates.pop("credentials", None)
        if updates.get("daily_quota") is not None and updates["daily_quota"] < 1:
            raise ValueError("daily_quota must be at least 1")

        if credentials:
            provider = self.get_provider(account.provider_id)
            await self._vault.put(account_id, self._build_credential(provider, credentials))

        async with self._lock_for(account_id):
            for key, value in updates.items():
                setattr(account, key, value)
            if credentials:
                self._bring_back(account)
            if account.daily_quota is not None and account.used > account.daily_quota:
                account.used = account.daily_quota
            account.updated_at = int(self._clock())
            self._save_account(account)
        return account

    async def delete_account(self, account_id: str) -> bool:
        account = self._accounts.pop(account_id, None)
        if account is None:
            return False
        await self._vault.delete(account_id)
        self._locks.pop(account_id, None)
        self._delete_row(Account, account_id)
        self._logs.info(f"Deleted account: {account.name}", account_id=account_id,
                        provider_id=account.provider_id)
        return True

    async def set_balance(self, account_id: str, balance: Optional[float]) -> PooledAccount:
        account = self.get_account(account_id)
        async with self._lock_for(account_id):
            account.balance = balance
            account.updated_at = int(self._clock())
            self._save_account(account)
        return account

    def _build_credential(self, provider: Provider, fields: Dict[str, str]) -> Credential:
        missing = [name for name in provider.required_credential_fields() if not fields.get(name)]
        if missing:
            raise ValueError(f"Missing credential field(s): {', '.join(missing)}")
        kind = {
            AuthType.API_KEY: "api_key",
            AuthType.BEARER: "bearer",
            AuthType.OAUTH: "oauth",
        }[AuthType(provider.auth_type)]
        return Credential.from_fields(kind, fields)

    # ==================== Selection support ====================

    def list_eligible(
        self, provider_id: Optional[str] = None, model: Optional[str] = None
    ) -> List[PooledAccount]:
        eligible = []
        for account in self._accounts.values():
            if provider_id is not None and account.provider_id != provider_id:
                continue
            if not account.enabled or account.status == AccountStatus.OFFLINE:
                continue
            if account.quota_exhausted:
                continue
            provider = self._providers.get(account.provider_id)
            if provider is None or not provider.enabled:
                continue
            if model is not None and not provider.supports_model(model):
                continue
            eligible.append(account)
        return eligible

    async def record_usage(self, account_id: str, delta: int = 1) -> int:
        """
        Add to an account's usage counter.

        The counter is clamped to daily_quota, so `used` never exceeds the
        quota however many callers race here.

        Returns:
            The new value of `used`
        """
        account = self.get_account(account_id)
        async with self._lock_for(account_id):
            wanted = account.used + delta
            if account.daily_quota is not None and wanted > account.daily_quota:
                wanted = account.daily_quota
            account.used = max(0, wanted)
            account.request_count += 1
            account.last_used = int(self._clock())
            account.updated_at = account.last_used
            self._save_account(account)
            used = account.used
            exhausted = account.quota_exhausted

        if exhausted:
            logger.info("Account %s reached its daily quota (%s)", account.name, account.daily_quota)
        return used

    async def mark_health(self, account_id: str, outcome: HealthOutcome, error: Optional[str] = None) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            return

        went_offline = False
        async with self._lock_for(account_id):
            if outcome == HealthOutcome.SUCCESS:
                account.consecutive_failures = 0
                account.offline_reason = None
                account.offline_since = None
                account.error_message = None
                account.status = AccountStatus.ONLINE
            elif outcome == HealthOutcome.AUTH_FAILURE:
                account.error_message = error
                went_offline = account.status != AccountStatus.OFFLINE
                self._take_offline(account, "auth")
            else:
                account.consecutive_failures += 1
                account.error_message = error
                if account.consecutive_failures >= FAIL_THRESHOLD and account.status != AccountStatus.OFFLINE:
                    self._take_offline(account, "transport")
                    went_offline = True
            account.updated_at = int(self._clock())
            self._save_account(account)

        if went_offline and outcome == HealthOutcome.TRANSPORT_FAILURE:
            self._logs.warn(
                f"Account {account.name} marked offline after {FAIL_THRESHOLD} consecutive failures",
                account_id=account_id,
                provider_id=account.provider_id,
                data={"error": error},
            )
        elif went_offline:
            logger.warning("Account %s marked offline: %s", account.name, error)

    async def reset_quotas(self, now: Optional[float] = None) -> int:
        """Zero `used` on accounts whose 24h quota period has elapsed. Returns how many were reset."""
        now = int(now if now is not None else self._clock())
        reset = 0
        for account in list(self._accounts.values()):
            async with self._lock_for(account.id):
                if now - account.last_reset < QUOTA_PERIOD_SECONDS:
                    continue
                account.used = 0
                account.last_reset = now
                account.updated_at = now
                self._save_account(account)
                reset += 1
        if reset:
            self._logs.info(f"Daily quota reset for {reset} account(s)")
        return reset

    async def recover_offline(self, now: Optional[float] = None) -> int:
        """Return accounts that went offline on transport failures to `unknown` after the recovery delay."""
        now = now if now is not None else self._clock()
        recovered = 0
        for account in list(self._accounts.values()):
            if account.offline_reason != "transport" or account.offline_since is None:
                continue
            if now - account.offline_since < RECOVERY_SECONDS:
                continue
            async with self._lock_for(account.id):
                self._bring_back(account)
                self._save_account(account)
            recovered += 1
            self._logs.info(f"Account {account.name} back in rotation", account_id=account.id,
                            provider_id=account.provider_id)
        return recovered

    async def reinstate(self, account_id: str) -> None:
        """Put an offline account back into rotation with a clean failure history."""
        account = self.get_account(account_id)
        if account.status != AccountStatus.OFFLINE:
            return
        async with self._lock_for(account_id):
            self._bring_back(account)
            self._save_account(account)

    def _take_offline(self, account: PooledAccount, reason: str) -> None:
        account.status = AccountStatus.OFFLINE
        account.offline_reason = reason
        account.offline_since = self._clock()

    def _bring_back(self, account: PooledAccount) -> None:
        account.status = AccountStatus.UNKNOWN
        account.consecutive_failures = 0
        account.offline_reason = None
        account.offline_since = None
        account.error_message = None
        account.updated_at = int(self._clock())

    # ==================== Persistence ====================

    def _save_provider(self, provider: Provider) -> None:
        if self._engine is None:
            return
        with Session(self._engine) as session:
            session.merge(provider)
            session.commit()

    def _save_account(self, account: PooledAccount) -> None:
        if self._engine is None:
            return
        with Session(self._engine) as session:
            session.merge(account.to_record())
            session.commit()

    def _delete_row(self, model, key: str) -> None:
        if self._engine is None:
            return
        with Session(self._engine) as session:
            row = session.get(model, key)
            if row is not None:
                session.delete(row)
                session.commit()
