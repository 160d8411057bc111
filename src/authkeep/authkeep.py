"""AuthKeep — instance-based configuration and entry point."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import TYPE_CHECKING

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from authkeep.config import AuthKeepConfig, Stage
from authkeep.core.schemas import (
    AuthenticatedUser,
    GrantResponse,
    RegisterResponse,
    SessionData,
    SessionMetadata,
    UserProfile,
)
from authkeep.core.scope import PermissionSet, Role, ScopeParseError
from authkeep.core.sessions import Session, SessionStore
from authkeep.core.tokens import AccessTokenClaims, TokenExpiredError, TokenError, TokenManager
from authkeep.db import create_engine, create_session_factory, get_session
from authkeep.errors import AuthError, Unauthenticated
from authkeep.events import (
    EventCollector,
    HookRegistry,
    LoginFailed,
    RefreshTokenReused,
    RoleAdded,
    RoleRemoved,
    SessionRevoked,
)
from authkeep.kv import create_redis
from authkeep.mail import EmailSender, LoggingEmailSender
from authkeep.providers.base import OAuthProvider, ProviderRegistry
from authkeep.utils import utc_now
from authkeep.utils.passwords import PasswordHasher
from authkeep.utils.validation import CredentialValidators

if TYPE_CHECKING:
    from fastapi import APIRouter


class AuthKeep:
    """Main AuthKeep instance — holds config, store connections and collaborators.

    Args:
        database_url: Required async database URL (e.g. postgresql+asyncpg://...).
        secret: HMAC secret for signing tokens.
        redis_url: Redis URL. Ignored when ``redis`` is given.
        redis: Ready Redis client (must use ``decode_responses=True``).
        stage: Deployment stage. ``Stage.PROD`` hashes one-time code keys.
        access_token_ttl: Access token lifetime in seconds (default 3600 = 1 hour).
        refresh_token_ttl: Refresh token and session lifetime in seconds (default 30 days).
        email_verify_ttl: Email verification code lifetime (default 86400 = 24 hours).
        password_reset_ttl: Password reset code lifetime (default 3600 = 1 hour).
        hash_otp_keys: Override the stage default for hashing one-time code keys.
        frontend_url: Base URL of the first-party frontend; the OAuth redirect
            URI is ``{frontend_url}/auth/oauth``.
        providers: OAuth providers (e.g. GitHubProvider, DiscordProvider).
        email_sender: Delivery collaborator for verification/reset emails.
        http_client: HTTP client for provider calls. Created with a bounded
            timeout when omitted.
        oauth_timeout: Timeout in seconds for provider calls (default 10).
        hasher_workers: Size of the password hashing worker pool.
        db_pool_size: PostgreSQL connection pool size (default 5).
        validators: Credential validators (username, email, password).
        clock: Time source for token expiry (tests).
    """

    def __init__(
        self,
        database_url: str,
        *,
        secret: str,
        redis_url: str | None = None,
        redis: Redis | None = None,
        stage: Stage = Stage.DEV,
        access_token_ttl: int = 3600,
        refresh_token_ttl: int = 60 * 60 * 24 * 30,
        email_verify_ttl: int = 86400,
        password_reset_ttl: int = 3600,
        hash_otp_keys: bool | None = None,
        frontend_url: str = "http://localhost:3000",
        providers: list[OAuthProvider] | None = None,
        email_sender: EmailSender | None = None,
        http_client: httpx.AsyncClient | None = None,
        oauth_timeout: float = 10.0,
        hasher_workers: int = 4,
        db_pool_size: int = 5,
        validators: CredentialValidators | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if redis is None and redis_url is None:
            raise ValueError("Either redis_url or redis must be given")

        self._config = AuthKeepConfig(
            database_url=database_url,
            stage=stage,
            access_token_expire_seconds=access_token_ttl,
            refresh_token_expire_seconds=refresh_token_ttl,
            email_verify_ttl_seconds=email_verify_ttl,
            password_reset_ttl_seconds=password_reset_ttl,
            hash_otp_keys=stage is Stage.PROD if hash_otp_keys is None else hash_otp_keys,
            frontend_url=frontend_url,
            oauth_timeout_seconds=oauth_timeout,
            hasher_max_workers=hasher_workers,
        )
        self._engine = create_engine(database_url, pool_size=db_pool_size)
        self._session_factory = create_session_factory(self._engine)
        self._owns_redis = redis is None
        self._redis = redis if redis is not None else create_redis(redis_url)
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(oauth_timeout))
        self._tokens = TokenManager(
            secret,
            access_ttl=access_token_ttl,
            refresh_ttl=refresh_token_ttl,
            clock=clock,
        )
        self._sessions = SessionStore(self._redis, self._tokens)
        self._hasher = PasswordHasher(max_workers=hasher_workers)
        self._providers = ProviderRegistry(providers)
        self._mailer = email_sender or LoggingEmailSender()
        self._validators = validators or CredentialValidators()
        self._hooks = HookRegistry()
        self._current_user_dep = None

    @property
    def config(self) -> AuthKeepConfig:
        """Read-only access to the internal config."""
        return self._config

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Access the async session factory (e.g., for testing)."""
        return self._session_factory

    @property
    def redis(self) -> Redis:
        return self._redis

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    @property
    def hooks(self) -> HookRegistry:
        """Access the hook registry."""
        return self._hooks

    # ------ Event hooks ------

    def on(self, event_name: str):
        """Decorator to register an event hook.

        Usage:
            @auth.on("user_created")
            async def handle(event):
                print(event.email)
        """
        def decorator(fn):
            self._hooks.register(event_name, fn)
            return fn
        return decorator

    def add_hook(self, event_name: str, callback) -> None:
        """Register an event hook callback programmatically."""
        self._hooks.register(event_name, callback)

    # ------ Database session helpers ------

    def get_session(self) -> AsyncGenerator[AsyncSession]:
        """Context manager for service-level code."""
        return get_session(self._session_factory)

    async def _run(self, operation, **kwargs):
        """Run a core operation in one transaction, then flush its events."""
        collector = EventCollector(self._hooks)
        async with get_session(self._session_factory) as session:
            result = await operation(session, events=collector, **kwargs)
        await collector.flush()
        return result

    # ------ Grants ------

    async def issue_tokens_for_password_grant(
        self, email: str, password: str, metadata: SessionMetadata | None = None,
    ) -> GrantResponse:
        """Owner-password grant: primary email + password.

        Raises:
            Unauthenticated: Unknown email or wrong password.
            Forbidden: The account must reset its password first.
        """
        from authkeep.core.auth import password_grant

        metadata = metadata or SessionMetadata()
        try:
            return await self._run(
                password_grant, hasher=self._hasher, sessions=self._sessions,
                email=email, password=password, metadata=metadata,
            )
        except AuthError as e:
            await self._hooks.emit("login_failed", LoginFailed(
                email=email, reason=e.code,
                ip_address=metadata.ip, device_name=metadata.device_name,
            ))
            raise

    async def issue_tokens_for_refresh_grant(
        self, refresh_token: str, metadata: SessionMetadata | None = None,
    ) -> GrantResponse:
        """Refresh grant: rotate the token pair, keeping the session id.

        Raises:
            ValidationFailed: Malformed token.
            Unauthenticated: Invalid, expired, revoked or reused token.
        """
        from authkeep.core.auth import RefreshTokenReuse, refresh_grant

        try:
            return await self._run(
                refresh_grant, tokens=self._tokens, sessions=self._sessions,
                refresh_token=refresh_token, metadata=metadata or SessionMetadata(),
            )
        except RefreshTokenReuse as e:
            await self._hooks.emit("refresh_token_reused", RefreshTokenReused(
                user_id=e.user_id, session_id=e.session_id,
            ))
            raise

    async def issue_tokens_for_assertion_grant(
        self, provider: str, code: str, metadata: SessionMetadata | None = None,
    ) -> GrantResponse:
        """Assertion grant: exchange a provider authorization code for a session.

        Raises:
            NotFound: Unknown provider.
            UpstreamFailure: The provider failed or timed out.
            ValidationFailed: The provider gave no email.
        """
        from authkeep.core.auth import open_session
        from authkeep.core.oauth import handle_assertion

        oauth_provider = self._providers.get(provider)
        metadata = metadata or SessionMetadata()

        async def assertion(session, *, events):
            from authkeep.events import Login

            user_id = await handle_assertion(
                session, provider=oauth_provider, client=self._http, hasher=self._hasher,
                code=code, redirect_uri=self._config.oauth_redirect_uri, events=events,
            )
            handle, response = await open_session(
                session, sessions=self._sessions, user_id=user_id, metadata=metadata,
            )
            events.collect("login", Login(
                user_id=user_id, session_id=handle.session_id, provider=oauth_provider.name,
                ip_address=metadata.ip, device_name=metadata.device_name,
            ))
            return response

        return await self._run(assertion)

    def verify_access_token(self, token: str) -> AuthenticatedUser:
        """Verify an access token and return the identity it carries.

        Raises:
            Unauthenticated: Malformed, forged or expired token.
        """
        try:
            claims = self._tokens.verify(token, AccessTokenClaims)
            PermissionSet.parse(claims.scope)
        except TokenExpiredError:
            raise Unauthenticated("Access token has expired", code="token_expired")
        except (TokenError, ScopeParseError):
            raise Unauthenticated("Invalid access token", code="token_invalid")
        return AuthenticatedUser(user_id=claims.sub, session_id=claims.sid, scope=claims.scope)

    # ------ Registration and account ------

    async def register_user(
        self,
        username: str,
        email: str,
        password: str,
        metadata: SessionMetadata | None = None,
    ) -> RegisterResponse:
        """Register a user, send the verification code, open a first session.

        Raises:
            ValidationFailed: A field is rejected by the validators.
            Conflict: Username or email already taken.
        """
        from authkeep.core.auth import register

        return await self._run(
            register, config=self._config, redis=self._redis, hasher=self._hasher,
            sessions=self._sessions, validators=self._validators, mailer=self._mailer,
            username=username, email=email, password=password,
            metadata=metadata or SessionMetadata(),
        )

    async def complete_account(
        self,
        user_id: uuid.UUID,
        *,
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        """Set the username and/or password pending after an OAuth sign-up."""
        from authkeep.core.auth import complete_account

        await self._run(
            complete_account, hasher=self._hasher, validators=self._validators,
            user_id=user_id, username=username, password=password,
        )

    async def change_password(
        self,
        user_id: uuid.UUID,
        old_password: str,
        new_password: str,
        *,
        keep_session: uuid.UUID | None = None,
    ) -> None:
        """Change a password and revoke every session except ``keep_session``."""
        from authkeep.core.auth import change_password

        await self._run(
            change_password, hasher=self._hasher, sessions=self._sessions,
            validators=self._validators, user_id=user_id, old_password=old_password,
            new_password=new_password, keep_session=keep_session,
        )

    async def add_email(self, user_id: uuid.UUID, email: str, password: str) -> None:
        """Attach another address to an account (password required)."""
        from authkeep.core.auth import add_email

        await self._run(
            add_email, config=self._config, redis=self._redis, hasher=self._hasher,
            validators=self._validators, mailer=self._mailer,
            user_id=user_id, email=email, password=password,
        )

    async def get_profile(self, user_id: uuid.UUID) -> UserProfile:
        from authkeep.core.auth import get_profile

        async with get_session(self._session_factory) as session:
            return await get_profile(session, user_id=user_id)

    # ------ Sessions ------

    async def list_sessions(self, user_id: uuid.UUID) -> list[SessionData]:
        """Active sessions of a user, most recently used first."""
        return await self._sessions.list_for_user(user_id)

    async def revoke_session(self, user_id: uuid.UUID, session_id: uuid.UUID) -> bool:
        """Revoke one session. Idempotent; returns whether it existed."""
        revoked = await self._sessions.revoke(Session(user_id=user_id, session_id=session_id))
        if revoked:
            await self._hooks.emit("session_revoked", SessionRevoked(
                user_id=user_id, session_id=session_id,
            ))
        return revoked

    async def revoke_all_sessions(
        self, user_id: uuid.UUID, *, exclude: uuid.UUID | None = None,
    ) -> int:
        """Revoke every session of a user, optionally keeping one."""
        count = await self._sessions.revoke_all(user_id, exclude=exclude)
        await self._hooks.emit("session_revoked", SessionRevoked(
            user_id=user_id, revoke_all=True,
        ))
        return count

    # ------ One-time codes ------

    async def generate_and_send_verification_otp(self, user_id: uuid.UUID, email: str) -> None:
        """Send (or resend) a verification code to one of the user's addresses.

        Raises:
            NotFound: The address does not belong to the user.
            ValidationFailed: The address is already verified.
        """
        from authkeep.core.auth import request_email_verification

        await self._run(
            request_email_verification, config=self._config, redis=self._redis,
            mailer=self._mailer, user_id=user_id, email=email,
        )

    async def consume_verification_otp(self, user_id: uuid.UUID, code: str) -> str:
        """Consume a verification code; returns the address now verified.

        Raises:
            NotFound: Unknown, used or expired code.
        """
        from authkeep.core.auth import verify_email

        return await self._run(
            verify_email, config=self._config, redis=self._redis, user_id=user_id, code=code,
        )

    async def generate_and_send_reset_otp(self, email: str) -> None:
        """Send a password reset code. Does nothing for unknown addresses."""
        from authkeep.core.auth import request_password_reset

        await self._run(
            request_password_reset, config=self._config, redis=self._redis,
            mailer=self._mailer, email=email,
        )

    async def consume_reset_otp(self, code: str) -> str:
        """Consume a reset code and return the address it was sent to.

        Raises:
            NotFound: Unknown, used or expired code.
        """
        from authkeep.core.auth import consume_reset_code

        return await consume_reset_code(config=self._config, redis=self._redis, code=code)

    async def reset_password(self, code: str, new_password: str) -> None:
        """Reset a password with a code, revoke all sessions, notify the user."""
        from authkeep.core.auth import reset_password

        await self._run(
            reset_password, config=self._config, redis=self._redis, hasher=self._hasher,
            sessions=self._sessions, validators=self._validators, mailer=self._mailer,
            code=code, new_password=new_password,
        )

    # ------ Role management ------

    async def add_role(self, user_id: uuid.UUID, role: Role | str) -> None:
        """Assign a role. Takes effect on the next grant."""
        from authkeep.repositories import role as role_repo

        role = Role(role)
        collector = EventCollector(self._hooks)
        async with get_session(self._session_factory) as session:
            await role_repo.add_role(session, user_id, role.value)
            collector.collect("role_added", RoleAdded(user_id=user_id, role=role.value))
        await collector.flush()

    async def remove_role(self, user_id: uuid.UUID, role: Role | str) -> None:
        """Remove a role. Takes effect on the next grant."""
        from authkeep.repositories import role as role_repo

        role = Role(role)
        collector = EventCollector(self._hooks)
        async with get_session(self._session_factory) as session:
            await role_repo.remove_role(session, user_id, role.value)
            collector.collect("role_removed", RoleRemoved(user_id=user_id, role=role.value))
        await collector.flush()

    async def get_roles(self, user_id: uuid.UUID) -> list[str]:
        """Get all roles for a user."""
        from authkeep.repositories import role as role_repo

        async with get_session(self._session_factory) as session:
            return await role_repo.get_roles(session, user_id)

    async def get_permissions(self, user_id: uuid.UUID) -> PermissionSet:
        """Resolve a user's current permission set from their roles."""
        from authkeep.core.scope import resolve

        async with get_session(self._session_factory) as session:
            return await resolve(session, user_id)

    # ------ FastAPI integration ------

    def fastapi_router(self) -> APIRouter:
        """Create a FastAPI router with the token and account endpoints.

        Usage:
            app.include_router(auth.fastapi_router(), prefix="/auth")
        """
        from authkeep.integrations.fastapi.router import create_auth_router

        return create_auth_router(self)

    @property
    def current_user(self):
        """FastAPI dependency: the identity behind the bearer access token.

        Usage:
            @app.get("/profile")
            async def profile(user=Depends(auth.current_user)):
                ...
        """
        if self._current_user_dep is None:
            from authkeep.integrations.fastapi.deps import create_current_user_dep

            self._current_user_dep = create_current_user_dep(self)
        return self._current_user_dep

    def require_permission(self, *permissions):
        """FastAPI dependency factory: require every given permission.

        Usage:
            @app.get("/users")
            async def users(user=Depends(auth.require_permission(Permission.USER_VIEW))):
                ...
        """
        from authkeep.integrations.fastapi.deps import create_require_permission_dep

        return create_require_permission_dep(self, *permissions)

    # ------ Migrations ------

    async def migrate(self) -> None:
        """Run pending database migrations. Safe to call on every startup.

        Uses bundled Alembic migrations to create or update the schema.
        Tracks state in the ``authkeep_alembic_version`` table (separate
        from any developer Alembic setup).
        """
        from pathlib import Path

        from alembic.config import Config

        config = Config()
        config.set_main_option(
            "script_location",
            str(Path(__file__).parent / "migrations"),
        )

        async with self._engine.begin() as conn:
            await conn.run_sync(self._run_upgrade, config)

    @staticmethod
    def _run_upgrade(connection, config) -> None:
        from alembic import command

        config.attributes["connection"] = connection
        command.upgrade(config, "head")

    # ------ Lifecycle ------

    async def dispose(self) -> None:
        """Release the database engine, the owned Redis and HTTP clients, and the worker pool."""
        await self._engine.dispose()
        if self._owns_redis:
            await self._redis.aclose()
        if self._owns_http_client:
            await self._http.aclose()
        self._hasher.shutdown()
