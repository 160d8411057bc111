"""Request/response models shared by the core flows and the HTTP adapter."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from authkeep.utils import utc_now


class SessionMetadata(BaseModel):
    """Device information recorded with a session."""
    device_name: str | None = None
    ip: str | None = None
    last_accessed: datetime = Field(default_factory=utc_now)


class SessionData(BaseModel):
    """Session record as stored in the key-value store."""
    metadata: SessionMetadata
    session_id: uuid.UUID
    refresh_token: str


class SessionResponse(BaseModel):
    """A session as shown in "active sessions" listings (no token)."""
    session_id: uuid.UUID
    device_name: str | None
    ip: str | None
    last_accessed: datetime

    @classmethod
    def from_data(cls, data: SessionData) -> "SessionResponse":
        return cls(
            session_id=data.session_id,
            device_name=data.metadata.device_name,
            ip=data.metadata.ip,
            last_accessed=data.metadata.last_accessed,
        )


class Tokens(BaseModel):
    """Token pair minted for a session."""
    access_token: str
    refresh_token: str
    expires_in: int


class GrantResponse(BaseModel):
    """OAuth2 token endpoint response."""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: Literal["bearer"] = "bearer"
    scope: str

    @classmethod
    def from_tokens(cls, tokens: Tokens, scope: str) -> "GrantResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            scope=scope,
        )


class RegisterResponse(BaseModel):
    user_id: uuid.UUID
    tokens: GrantResponse


class EmailResponse(BaseModel):
    email: str
    verified: bool
    is_primary: bool


class UserProfile(BaseModel):
    """User data returned by the API (no password hash)."""
    id: uuid.UUID
    username: str
    bio: str | None
    image: str | None
    reset_username: bool
    reset_password: bool
    emails: list[EmailResponse]
    roles: list[str]
    created_at: datetime


class AuthenticatedUser(BaseModel):
    """Identity extracted from a verified access token."""
    user_id: uuid.UUID
    session_id: uuid.UUID
    scope: str


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class PasswordGrantRequest(BaseModel):
    grant_type: Literal["password"]
    email: str
    password: str


class RefreshGrantRequest(BaseModel):
    grant_type: Literal["refresh_token"]
    refresh_token: str


class AssertionGrantRequest(BaseModel):
    grant_type: Literal["assertion"]
    provider: str
    code: str


TokenRequest = PasswordGrantRequest | RefreshGrantRequest | AssertionGrantRequest


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str


class EmailRequest(BaseModel):
    email: str


class CodeRequest(BaseModel):
    code: str


class ResetPasswordRequest(BaseModel):
    code: str
    password: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class CompleteAccountRequest(BaseModel):
    username: str | None = None
    password: str | None = None


class AddEmailRequest(BaseModel):
    email: str
    password: str
