"""AuthKeep — credential and session management for identity backends."""

__version__ = "0.1.0"

from authkeep.authkeep import AuthKeep
from authkeep.config import Stage
from authkeep.core.schemas import (
    AuthenticatedUser,
    GrantResponse,
    RegisterResponse,
    SessionData,
    SessionMetadata,
    SessionResponse,
    UserProfile,
)
from authkeep.core.scope import Permission, PermissionSet, Role
from authkeep.errors import (
    AuthError,
    Conflict,
    Forbidden,
    InternalError,
    NotFound,
    Unauthenticated,
    UpstreamFailure,
    ValidationFailed,
)
from authkeep.events import (
    AccountCompleted,
    EmailVerificationRequested,
    EmailVerified,
    Login,
    LoginFailed,
    OAuthLink,
    PasswordChanged,
    PasswordReset,
    PasswordResetRequested,
    RefreshTokenReused,
    RoleAdded,
    RoleRemoved,
    SessionRevoked,
    TokenRefreshed,
    UserCreated,
)
from authkeep.mail import EmailMessage, EmailSender, EmailTemplate, LoggingEmailSender
from authkeep.models.email import Email as AuthEmail
from authkeep.models.user import User as AuthUser
from authkeep.providers.discord import DiscordProvider
from authkeep.providers.github import GitHubProvider
from authkeep.providers.google import GoogleProvider
from authkeep.utils.validation import CredentialValidators, LengthValidator, PatternValidator

__all__ = [
    "AccountCompleted",
    "AuthEmail",
    "AuthError",
    "AuthKeep",
    "AuthUser",
    "AuthenticatedUser",
    "Conflict",
    "CredentialValidators",
    "DiscordProvider",
    "EmailMessage",
    "EmailSender",
    "EmailTemplate",
    "EmailVerificationRequested",
    "EmailVerified",
    "Forbidden",
    "GitHubProvider",
    "GoogleProvider",
    "GrantResponse",
    "InternalError",
    "LengthValidator",
    "LoggingEmailSender",
    "Login",
    "LoginFailed",
    "NotFound",
    "OAuthLink",
    "PasswordChanged",
    "PasswordReset",
    "PasswordResetRequested",
    "PatternValidator",
    "Permission",
    "PermissionSet",
    "RefreshTokenReused",
    "RegisterResponse",
    "Role",
    "RoleAdded",
    "RoleRemoved",
    "SessionData",
    "SessionMetadata",
    "SessionResponse",
    "SessionRevoked",
    "Stage",
    "TokenRefreshed",
    "Unauthenticated",
    "UpstreamFailure",
    "UserCreated",
    "UserProfile",
    "ValidationFailed",
]
