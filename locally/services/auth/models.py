from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from locally.domain.security import SecurityLevel


class AuthType(str, Enum):
    PASSWORD = "password"
    API_KEY = "api_key"


class AuthCredentials(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    tenant_id: str | None = None


class APIKeyCredentials(BaseModel):
    api_key: str = Field(min_length=1)
    tenant_id: str | None = None


class TokenResponse(BaseModel):
    """Token pair returned to callers.

    Failed authentications return the same shape with an empty token; the
    excluded identity fields and ``error`` feed the audit trail but are never
    serialized to clients.
    """

    token: str = ""
    refresh_token: str = ""
    expires_at: datetime | None = None
    tenant_id: str | None = Field(default=None, exclude=True)
    user_id: str | None = Field(default=None, exclude=True)
    username: str | None = Field(default=None, exclude=True)
    api_key_id: str | None = Field(default=None, exclude=True)
    error: str | None = Field(default=None, exclude=True)


class AuthClaims(BaseModel):
    username: str
    user_id: str
    tenant_id: str
    issuer: str
    issued_at: datetime
    expires_at: datetime
    auth_type: AuthType = AuthType.PASSWORD
    security_level: SecurityLevel = SecurityLevel.NONE
    roles: list[str] = Field(default_factory=list)
    api_key_id: str | None = None

    def is_superuser(self) -> bool:
        return self.security_level is SecurityLevel.SUPERUSER
