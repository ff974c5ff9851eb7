from typing import Dict, Optional
from enum import Enum
from sqlmodel import SQLModel, Field
import time


def current_timestamp() -> int:
    return int(time.time())


class AccountStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class AccountBase(SQLModel):
    provider_id: str = Field(index=True)
    name: str
    email: Optional[str] = None
    enabled: bool = True
    daily_quota: Optional[int] = None  # None = unlimited


class Account(AccountBase, table=True):
    id: str = Field(primary_key=True)
    status: AccountStatus = AccountStatus.UNKNOWN
    used: int = 0
    last_reset: int = Field(default_factory=current_timestamp)
    balance: Optional[float] = None
    request_count: int = 0
    last_used: Optional[int] = None
    error_message: Optional[str] = None
    created_at: int = Field(default_factory=current_timestamp)
    updated_at: int = Field(default_factory=current_timestamp)


class AccountCreate(AccountBase):
    id: Optional[str] = None
    # Raw credential fields as described by the provider's credential schema,
    # e.g. {"api_key": "..."} or {"access_token": "...", "refresh_token": "...", "expires_in": "3600"}
    credentials: Dict[str, str] = Field(default_factory=dict)


class AccountUpdate(SQLModel):
    name: Optional[str] = None
    email: Optional[str] = None
    enabled: Optional[bool] = None
    daily_quota: Optional[int] = None
    credentials: Optional[Dict[str, str]] = None


class AccountRead(AccountBase):
    id: str
    status: AccountStatus
    used: int
    last_reset: int
    balance: Optional[float] = None
    request_count: int = 0
    last_used: Optional[int] = None
    error_message: Optional[str] = None
    weight: int = 1
    token_state: Optional[str] = None
    created_at: int
    updated_at: int
