"""AuthKeep configuration — deployment stage and the internal settings dataclass."""

from dataclasses import dataclass
from enum import Enum

JWT_ALGORITHM = "HS384"


class Stage(str, Enum):
    """Deployment stage. Production turns on hashing of one-time code keys."""

    DEV = "dev"
    PROD = "prod"


@dataclass(frozen=True, slots=True)
class AuthKeepConfig:
    """Internal config built by the AuthKeep constructor. Not user-facing."""

    database_url: str
    stage: Stage = Stage.DEV
    access_token_expire_seconds: int = 3600  # 1 hour
    refresh_token_expire_seconds: int = 60 * 60 * 24 * 30  # 30 days
    email_verify_ttl_seconds: int = 86400  # 24 hours
    password_reset_ttl_seconds: int = 3600  # 1 hour
    hash_otp_keys: bool = False
    frontend_url: str = "http://localhost:3000"
    oauth_timeout_seconds: float = 10.0
    hasher_max_workers: int = 4

    @property
    def oauth_redirect_uri(self) -> str:
        """Redirect URI registered with every OAuth provider."""
        return f"{self.frontend_url.rstrip('/')}/auth/oauth"
