"""
Credential Vault

Secure storage of per-account secrets (API keys, bearer tokens, OAuth token
pairs). Callers outside the vault only ever get an AuthCapability, which can
decorate outgoing request headers but never prints the secret.
"""
import asyncio
import logging
import time
from typing import Dict, Optional

from pydantic import BaseModel, Field, SecretStr
from sqlmodel import Session, select

from chatrelay.core.errors import NotFound
from chatrelay.models.credential import StoredCredential

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    kind: str = "api_key"  # api_key / bearer / oauth
    secret: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_at: Optional[int] = None
    extra: Dict[str, str] = Field(default_factory=dict)

    def expires_within(self, seconds: int, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at - seconds

    @classmethod
    def from_fields(cls, kind: str, fields: Dict[str, str]) -> "Credential":
        """Build a credential from the raw fields typed into the account form."""
        secret = fields.get("api_key") or fields.get("access_token") or fields.get("token")
        if not secret:
            raise ValueError("Credential needs an api_key, access_token or token field")

        expires_at = None
        if fields.get("expires_at"):
            expires_at = int(fields["expires_at"])
        elif fields.get("expires_in"):
            expires_at = int(time.time()) + int(fields["expires_in"])

        known = {"api_key", "access_token", "token", "refresh_token", "expires_at", "expires_in"}
        return cls(
            kind=kind,
            secret=secret,
            refresh_token=fields.get("refresh_token") or None,
            expires_at=expires_at,
            extra={k: v for k, v in fields.items() if k not in known},
        )


class AuthCapability:
    """Opaque handle that applies one account's secret to a request."""

    def __init__(self, account_id: str, credential: Credential, header: Optional[str] = None):
        self.account_id = account_id
        self._credential = credential
        self._header = header

    @property
    def expires_at(self) -> Optional[int]:
        return self._credential.expires_at

    def apply(self, headers: Dict[str, str]) -> Dict[str, str]:
        token = self._credential.secret.get_secret_value()
        if self._header and self._credential.kind == "api_key":
            headers[self._header] = token
        else:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def __repr__(self) -> str:
        return f"AuthCapability(account_id={self.account_id!r})"


class CredentialVault:
    def __init__(self, engine=None):
        self._engine = engine
        self._credentials: Dict[str, Credential] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    def load(self) -> int:
        """Load all stored credentials into memory. Returns how many were loaded."""
        if self._engine is None:
            return 0
        with Session(self._engine) as session:
            rows = session.exec(select(StoredCredential)).all()
            for row in rows:
                self._credentials[row.account_id] = Credential(
                    kind=row.kind,
                    secret=row.secret,
                    refresh_token=row.refresh_token,
                    expires_at=row.expires_at,
                    extra=dict(row.extra or {}),
                )
        logger.info("Loaded %d credentials", len(rows))
        return len(rows)

    def has(self, account_id: str) -> bool:
        return account_id in self._credentials

    async def get(self, account_id: str) -> Credential:
        async with self._lock_for(account_id):
            return self._get(account_id)

    def _get(self, account_id: str) -> Credential:
        credential = self._credentials.get(account_id)
        if credential is None:
            raise NotFound(f"No credential stored for account {account_id}")
        return credential

    async def put(self, account_id: str, credential: Credential) -> None:
        async with self._lock_for(account_id):
            self._credentials[account_id] = credential
            self._save(account_id, credential)

    async def delete(self, account_id: str) -> bool:
        async with self._lock_for(account_id):
            existed = self._credentials.pop(account_id, None) is not None
            self._remove(account_id)
        self._locks.pop(account_id, None)
        return existed

    async def capability(self, account_id: str, header: Optional[str] = None) -> AuthCapability:
        return AuthCapability(account_id, await self.get(account_id), header)

    def _save(self, account_id: str, credential: Credential) -> None:
        if self._engine is None:
            return
        with Session(self._engine) as session:
            session.merge(StoredCredential(
                account_id=account_id,
                kind=credential.kind,
                secret=credential.secret.get_secret_value(),
                refresh_token=(
                    credential.refresh_token.get_secret_value() if credential.refresh_token else None
                ),
                expires_at=credential.expires_at,
                extra=dict(credential.extra),
            ))
            session.commit()

    def _remove(self, account_id: str) -> None:
        if self._engine is None:
            return
        with Session(self._engine) as session:
            row = session.get(StoredCredential, account_id)
            if row is not None:
                session.delete(row)
                session.commit()
