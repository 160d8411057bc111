"""AuthKeep event system — typed events, hook registry, and event collection.

Developers register hooks via @auth.on("event_name") to react to auth events
(audit logs, analytics, syncing external systems). Hooks run after the DB
commit and are fail-open (errors logged, never break the auth flow).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

logger = logging.getLogger("authkeep.events")


# ---------------------------------------------------------------------------
# Event dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Event:
    """Base event. All events carry a timestamp."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class UserCreated(Event):
    """Fired when a new user is created (registration or first OAuth login)."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    email: str = ""
    provider: str = "password"


@dataclass(frozen=True, slots=True)
class Login(Event):
    """Fired when a session is opened (password or OAuth)."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    session_id: uuid.UUID = field(default_factory=uuid.uuid4)
    provider: str = "password"
    ip_address: str | None = None
    device_name: str | None = None


@dataclass(frozen=True, slots=True)
class LoginFailed(Event):
    """Fired when a password grant is rejected."""
    email: str = ""
    reason: str = ""
    ip_address: str | None = None
    device_name: str | None = None


@dataclass(frozen=True, slots=True)
class OAuthLink(Event):
    """Fired when a provider identity is linked to an existing user."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    email: str = ""
    provider: str = ""


@dataclass(frozen=True, slots=True)
class TokenRefreshed(Event):
    """Fired on successful refresh token rotation."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    session_id: uuid.UUID = field(default_factory=uuid.uuid4)
    ip_address: str | None = None
    device_name: str | None = None


@dataclass(frozen=True, slots=True)
class RefreshTokenReused(Event):
    """Fired when a rotated-out refresh token is presented. The session is revoked."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    session_id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True, slots=True)
class SessionRevoked(Event):
    """Fired when sessions are revoked (single or all)."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    session_id: uuid.UUID | None = None
    revoke_all: bool = False


@dataclass(frozen=True, slots=True)
class EmailVerificationRequested(Event):
    """Fired when a verification code is sent."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    email: str = ""


@dataclass(frozen=True, slots=True)
class EmailVerified(Event):
    """Fired when an email address is verified."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    email: str = ""


@dataclass(frozen=True, slots=True)
class PasswordResetRequested(Event):
    """Fired when a password reset code is sent."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    email: str = ""


@dataclass(frozen=True, slots=True)
class PasswordReset(Event):
    """Fired when a password is reset with a code."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True, slots=True)
class PasswordChanged(Event):
    """Fired when a user changes their password (old password verified)."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)


@dataclass(frozen=True, slots=True)
class AccountCompleted(Event):
    """Fired when a user sets the username/password left pending by OAuth signup."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    fields: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RoleAdded(Event):
    """Fired when a role is assigned to a user."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    role: str = ""


@dataclass(frozen=True, slots=True)
class RoleRemoved(Event):
    """Fired when a role is removed from a user."""
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    role: str = ""


# ---------------------------------------------------------------------------
# Event name mapping
# ---------------------------------------------------------------------------

EVENT_MAP: dict[str, type[Event]] = {
    "user_created": UserCreated,
    "login": Login,
    "login_failed": LoginFailed,
    "oauth_link": OAuthLink,
    "token_refreshed": TokenRefreshed,
    "refresh_token_reused": RefreshTokenReused,
    "session_revoked": SessionRevoked,
    "email_verification_requested": EmailVerificationRequested,
    "email_verified": EmailVerified,
    "password_reset_requested": PasswordResetRequested,
    "password_reset": PasswordReset,
    "password_changed": PasswordChanged,
    "account_completed": AccountCompleted,
    "role_added": RoleAdded,
    "role_removed": RoleRemoved,
}

HookCallback = Callable[[Any], Any]


# ---------------------------------------------------------------------------
# Hook registry
# ---------------------------------------------------------------------------

class HookRegistry:
    """Registry for event hook callbacks. Supports multiple listeners per event."""

    def __init__(self) -> None:
        self._hooks: dict[str, list[HookCallback]] = {}

    def register(self, event_name: str, callback: HookCallback) -> None:
        """Register a callback for an event name."""
        if event_name not in EVENT_MAP:
            raise ValueError(
                f"Unknown event '{event_name}'. "
                f"Valid events: {', '.join(sorted(EVENT_MAP))}"
            )
        self._hooks.setdefault(event_name, []).append(callback)

    def get_hooks(self, event_name: str) -> list[HookCallback]:
        """Get all registered callbacks for an event name."""
        return self._hooks.get(event_name, [])

    async def emit(self, event_name: str, event: Event) -> None:
        """Fire all registered callbacks for an event. Fail-open: errors are logged."""
        for callback in self.get_hooks(event_name):
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback(event)
                else:
                    loop = asyncio.get_running_loop()
                    await loop.run_in_executor(None, callback, event)
            except Exception:
                logger.exception(
                    "Hook error in '%s' handler %s.%s",
                    event_name,
                    callback.__module__,
                    callback.__qualname__,
                )


# ---------------------------------------------------------------------------
# Event collector
# ---------------------------------------------------------------------------

class EventCollector:
    """Collects events during a transaction, emits them after commit."""

    def __init__(self, registry: HookRegistry) -> None:
        self._registry = registry
        self._pending: list[tuple[str, Event]] = []

    def collect(self, event_name: str, event: Event) -> None:
        """Add an event to the pending list (called inside transaction)."""
        self._pending.append((event_name, event))

    async def flush(self) -> None:
        """Emit all pending events (called after commit). Clears the list."""
        events = self._pending.copy()
        self._pending.clear()
        for event_name, event in events:
            await self._registry.emit(event_name, event)
