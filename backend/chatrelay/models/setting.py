"""
Application Setting Model

Key/value rows holding JSON documents (the proxy configuration lives under "config").
"""
from sqlmodel import SQLModel, Field


class AppSetting(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: str
