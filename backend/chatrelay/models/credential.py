"""
Stored Credential Model

Secrets are owned by the credential vault; this table is its persistence.
"""
from typing import Dict, Optional
from sqlmodel import SQLModel, Field, Column, JSON


class StoredCredential(SQLModel, table=True):
    account_id: str = Field(primary_key=True)
    kind: str  # api_key / bearer / oauth
    secret: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    extra: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
