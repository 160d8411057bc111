"""Tests for the event hooks system: registry, collector, and integration."""

import logging

import pytest

from authkeep import AuthKeep, Conflict, Role, Unauthenticated
from authkeep.events import EventCollector, HookRegistry, Login, UserCreated
from conftest import unique_email, unique_username

pytestmark = pytest.mark.asyncio

PASSWORD = "testpassword123"


async def _register(auth: AuthKeep, email=None):
    email = email or unique_email()
    result = await auth.register_user(unique_username(), email, PASSWORD)
    return email, result


# ---------------------------------------------------------------------------
# Unit tests: HookRegistry
# ---------------------------------------------------------------------------


class TestHookRegistry:
    async def test_register_invalid_event_raises(self):
        registry = HookRegistry()
        with pytest.raises(ValueError, match="Unknown event"):
            registry.register("not_a_real_event", lambda e: None)

    async def test_emit_sync_and_async_callbacks(self):
        registry = HookRegistry()
        captured = []

        async def async_handler(event):
            captured.append(("async", event.email))

        registry.register("user_created", async_handler)
        registry.register("user_created", lambda e: captured.append(("sync", e.email)))
        await registry.emit("user_created", UserCreated(email="test@example.com"))
        assert captured == [("async", "test@example.com"), ("sync", "test@example.com")]

    async def test_failing_callback_is_logged_and_skipped(self, caplog):
        registry = HookRegistry()
        captured = []

        async def bad_handler(event):
            raise RuntimeError("hook failed")

        registry.register("login", bad_handler)
        registry.register("login", lambda e: captured.append(e))
        with caplog.at_level(logging.ERROR, logger="authkeep.events"):
            await registry.emit("login", Login())
        assert len(captured) == 1
        assert "Hook error" in caplog.text


# ---------------------------------------------------------------------------
# Unit tests: EventCollector
# ---------------------------------------------------------------------------


class TestEventCollector:
    async def test_collect_and_flush(self):
        registry = HookRegistry()
        captured = []
        registry.register("login", lambda e: captured.append(e))

        collector = EventCollector(registry)
        collector.collect("login", Login())
        assert captured == []
        await collector.flush()
        await collector.flush()
        assert len(captured) == 1


# ---------------------------------------------------------------------------
# Integration tests: events via AuthKeep
# ---------------------------------------------------------------------------


class TestFlowEvents:
    async def test_register_fires_created_verification_and_login(self, auth: AuthKeep):
        fired = []
        for name in ("user_created", "email_verification_requested", "login"):
            auth.add_hook(name, lambda e, name=name: fired.append((name, e)))

        email, result = await _register(auth)

        assert [name for name, _ in fired] == [
            "user_created", "email_verification_requested", "login",
        ]
        assert fired[0][1].email == email
        assert fired[0][1].user_id == result.user_id
        assert fired[2][1].session_id == auth.verify_access_token(result.tokens.access_token).session_id

    async def test_failed_registration_fires_nothing(self, auth: AuthKeep):
        email, _ = await _register(auth)
        fired = []
        auth.add_hook("user_created", lambda e: fired.append(e))

        with pytest.raises(Conflict):
            await _register(auth, email=email)
        assert fired == []

    async def test_login_failed(self, auth: AuthKeep):
        failures = []

        @auth.on("login_failed")
        async def on_failed(event):
            failures.append(event)

        email = unique_email()
        with pytest.raises(Unauthenticated):
            await auth.issue_tokens_for_password_grant(email, "wrongpassword")
        assert failures[0].email == email
        assert failures[0].reason == "invalid_credentials"

    async def test_token_refreshed_and_session_revoked(self, auth: AuthKeep):
        fired = []
        auth.add_hook("token_refreshed", lambda e: fired.append(("refreshed", e.session_id)))
        auth.add_hook("session_revoked", lambda e: fired.append(("revoked", e.session_id)))

        _, result = await _register(auth)
        identity = auth.verify_access_token(result.tokens.access_token)
        await auth.issue_tokens_for_refresh_grant(result.tokens.refresh_token)
        await auth.revoke_session(identity.user_id, identity.session_id)

        assert fired == [("refreshed", identity.session_id), ("revoked", identity.session_id)]

    async def test_verification_and_reset_events(self, auth: AuthKeep, mailer):
        fired = []
        for name in ("email_verified", "password_reset_requested", "password_reset"):
            auth.add_hook(name, lambda e, name=name: fired.append(name))

        email, result = await _register(auth)
        await auth.consume_verification_otp(result.user_id, mailer.last(email).data["code"])
        await auth.generate_and_send_reset_otp(email)
        await auth.reset_password(mailer.last(email).data["code"], "anotherpassword")

        assert fired == ["email_verified", "password_reset_requested", "password_reset"]

    async def test_role_events(self, auth: AuthKeep):
        fired = []
        auth.add_hook("role_added", lambda e: fired.append(("added", e.role)))
        auth.add_hook("role_removed", lambda e: fired.append(("removed", e.role)))

        _, result = await _register(auth)
        user_id = result.user_id
        await auth.add_role(user_id, Role.ROOT)
        await auth.remove_role(user_id, Role.ROOT)

        assert fired == [("added", "root"), ("removed", "root")]
