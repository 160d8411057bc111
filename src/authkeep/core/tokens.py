"""Signed access and refresh tokens (HS384 JWT).

Tokens are never stored except for the refresh token kept inside the
session record, so revocation happens by deleting the session.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import jwt

from authkeep.config import JWT_ALGORITHM
from authkeep.utils import utc_now


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenParseError(TokenError):
    """The token is not a well-formed JWT or its claims have the wrong shape."""


class TokenSignatureError(TokenError):
    """The signature does not match or the algorithm is not accepted."""


class TokenExpiredError(TokenError):
    """The signature is valid but ``exp`` has passed."""


def _nonce() -> str:
    return secrets.token_urlsafe(12)


def _uuid_claim(payload: dict[str, Any], name: str) -> uuid.UUID:
    value = payload.get(name)
    if not isinstance(value, str):
        raise TokenParseError(f"claim '{name}' missing or not a string")
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise TokenParseError(f"claim '{name}' is not a UUID") from e


def _exp_claim(payload: dict[str, Any]) -> int:
    value = payload.get("exp")
    if isinstance(value, bool) or not isinstance(value, int):
        raise TokenParseError("claim 'exp' missing or not an integer")
    return value


@dataclass(frozen=True, slots=True)
class RefreshTokenClaims:
    """Claims of a refresh token. Carries no scope."""

    sub: uuid.UUID
    sid: uuid.UUID
    exp: int
    jti: str = field(default_factory=_nonce)

    def to_payload(self) -> dict[str, Any]:
        return {"sub": str(self.sub), "sid": str(self.sid), "exp": self.exp, "jti": self.jti}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RefreshTokenClaims:
        if "scope" in payload:
            raise TokenParseError("refresh token must not carry a scope")
        return cls(
            sub=_uuid_claim(payload, "sub"),
            sid=_uuid_claim(payload, "sid"),
            exp=_exp_claim(payload),
            jti=str(payload.get("jti", "")),
        )


@dataclass(frozen=True, slots=True)
class AccessTokenClaims:
    """Claims of an access token: subject, session, permission scope."""

    sub: uuid.UUID
    sid: uuid.UUID
    scope: str
    exp: int
    jti: str = field(default_factory=_nonce)

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": str(self.sub),
            "sid": str(self.sid),
            "scope": self.scope,
            "exp": self.exp,
            "jti": self.jti,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AccessTokenClaims:
        scope = payload.get("scope")
        if not isinstance(scope, str):
            raise TokenParseError("claim 'scope' missing or not a string")
        return cls(
            sub=_uuid_claim(payload, "sub"),
            sid=_uuid_claim(payload, "sid"),
            scope=scope,
            exp=_exp_claim(payload),
            jti=str(payload.get("jti", "")),
        )


Claims = TypeVar("Claims", AccessTokenClaims, RefreshTokenClaims)


class TokenManager:
    """Signs and verifies access/refresh tokens with a shared secret.

    Args:
        secret: HMAC key shared by every instance of the service.
        access_ttl: Access token lifetime in seconds (default 1 hour).
        refresh_ttl: Refresh token lifetime in seconds (default 30 days).
        clock: Returns the current aware datetime. Injected so tests can
            move time forward.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl: int = 3600,
        refresh_ttl: int = 60 * 60 * 24 * 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock().timestamp())

    def sign(self, claims: AccessTokenClaims | RefreshTokenClaims) -> str:
        return jwt.encode(claims.to_payload(), self._secret, algorithm=JWT_ALGORITHM)

    def issue_access(self, user_id: uuid.UUID, session_id: uuid.UUID, scope: str) -> str:
        return self.sign(AccessTokenClaims(
            sub=user_id, sid=session_id, scope=scope, exp=self._now() + self.access_ttl,
        ))

    def issue_refresh(self, user_id: uuid.UUID, session_id: uuid.UUID) -> str:
        return self.sign(RefreshTokenClaims(
            sub=user_id, sid=session_id, exp=self._now() + self.refresh_ttl,
        ))

    def verify(self, token: str, shape: type[Claims]) -> Claims:
        """Verify a token and decode it into the requested claim shape.

        The signature is checked before expiry, so an expired token with a
        valid signature always reports ``TokenExpiredError``.

        Raises:
            TokenParseError: Malformed token or claims of the wrong shape.
            TokenSignatureError: Bad signature or unexpected algorithm.
            TokenExpiredError: Valid signature, ``exp`` in the past.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                options={"verify_exp": False},
            )
        except jwt.InvalidSignatureError as e:
            raise TokenSignatureError("signature verification failed") from e
        except jwt.InvalidAlgorithmError as e:
            raise TokenSignatureError("algorithm not allowed") from e
        except jwt.InvalidTokenError as e:
            raise TokenParseError(str(e)) from e

        claims = shape.from_payload(payload)
        if claims.exp <= self._now():
            raise TokenExpiredError("token expired")
        return claims
