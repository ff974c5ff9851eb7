"""
Provider Model

An upstream chat-API vendor configuration, builtin or user-added.
"""
from typing import Dict, List, Optional
from enum import Enum
from pydantic import BaseModel
from sqlmodel import SQLModel, Field, Column, JSON
import time


def current_timestamp() -> int:
    return int(time.time())


class ProviderType(str, Enum):
    BUILTIN = "builtin"
    CUSTOM = "custom"


class AuthType(str, Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"
    BEARER = "bearer"


class ProviderStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class CredentialField(BaseModel):
    """One entry of the credential schema shown when adding an account."""
    name: str
    label: str
    type: str = "password"  # text / password / textarea
    required: bool = True
    placeholder: Optional[str] = None
    help_text: Optional[str] = None


class ProviderBase(SQLModel):
    name: str
    type: ProviderType = ProviderType.CUSTOM
    auth_type: AuthType = AuthType.API_KEY
    base_url: str
    chat_path: str = "/chat/completions"
    headers: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    enabled: bool = True
    description: Optional[str] = None
    supported_models: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    model_mappings: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    credential_fields: List[dict] = Field(default_factory=list, sa_column=Column(JSON))

    # OAuth endpoints (auth_type == oauth)
    authorize_url: Optional[str] = None
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    # Probe endpoints, relative to base_url
    token_check_path: Optional[str] = None
    credits_path: Optional[str] = None
    api_key_header: Optional[str] = None  # e.g. "x-api-key"; default is Authorization: Bearer


class Provider(ProviderBase, table=True):
    id: str = Field(primary_key=True)
    status: ProviderStatus = ProviderStatus.UNKNOWN
    last_status_check: Optional[int] = None
    created_at: int = Field(default_factory=current_timestamp)
    updated_at: int = Field(default_factory=current_timestamp)

    def supports_model(self, model: str) -> bool:
        """Empty supported_models means the provider accepts any model."""
        if not self.supported_models:
            return True
        wanted = model.lower()
        for pattern in self.supported_models:
            pattern = pattern.lower()
            if pattern.endswith("*"):
                if wanted.startswith(pattern[:-1]):
                    return True
            elif pattern == wanted:
                return True
        return False

    def upstream_model(self, model: str) -> str:
        return self.model_mappings.get(model, model)

    def required_credential_fields(self) -> List[str]:
        return [f["name"] for f in self.credential_fields if f.get("required", True)]


class ProviderCreate(ProviderBase):
    id: Optional[str] = None


class ProviderUpdate(SQLModel):
    name: Optional[str] = None
    base_url: Optional[str] = None
    chat_path: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None
    supported_models: Optional[List[str]] = None
    model_mappings: Optional[Dict[str, str]] = None
    credential_fields: Optional[List[dict]] = None
    authorize_url: Optional[str] = None
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: Optional[List[str]] = None
    token_check_path: Optional[str] = None
    credits_path: Optional[str] = None
    api_key_header: Optional[str] = None


class ProviderRead(ProviderBase):
    id: str
    client_secret: Optional[str] = Field(default=None, exclude=True)
    status: ProviderStatus
    last_status_check: Optional[int] = None
    created_at: int
    updated_at: int
