"""Core auth service — grants, registration, verification and password flows.

Framework-agnostic business logic. Every function takes the open
``AsyncSession`` plus the collaborators it needs as keyword arguments.
"""

from __future__ import annotations

import hmac
import logging
import uuid
from typing import TYPE_CHECKING, NoReturn

from redis.asyncio import Redis
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from authkeep.config import AuthKeepConfig
from authkeep.core.otp import EmailVerifyOtp, PasswordResetOtp
from authkeep.core.schemas import (
    EmailResponse,
    GrantResponse,
    RegisterResponse,
    SessionMetadata,
    UserProfile,
)
from authkeep.core.scope import resolve
from authkeep.core.sessions import Session, SessionStore
from authkeep.core.tokens import RefreshTokenClaims, TokenError, TokenManager, TokenParseError
from authkeep.errors import (
    Forbidden,
    InternalError,
    NotFound,
    Unauthenticated,
    ValidationFailed,
    conflict_from_integrity_error,
)
from authkeep.mail import EmailMessage, EmailSender, EmailTemplate
from authkeep.models.email import Email
from authkeep.repositories import email as email_repo
from authkeep.repositories import role as role_repo
from authkeep.repositories import user as user_repo
from authkeep.utils.passwords import PasswordHasher, VerifyResult
from authkeep.utils.validation import CredentialValidators, normalize_email

if TYPE_CHECKING:
    from authkeep.events import EventCollector

logger = logging.getLogger("authkeep.auth")


class RefreshTokenReuse(Unauthenticated):
    """A refresh token that no longer matches its session was presented."""

    def __init__(self, user_id: uuid.UUID, session_id: uuid.UUID):
        self.user_id = user_id
        self.session_id = session_id
        super().__init__("Invalid refresh token", code="refresh_token_reused")


def _raise_conflict(error: IntegrityError) -> NoReturn:
    conflict = conflict_from_integrity_error(error)
    if conflict is None:
        raise error
    raise conflict from error


async def _send_mail(mailer: EmailSender, recipient: str, message: EmailMessage) -> None:
    try:
        await mailer.send(recipient, message)
    except Exception as e:
        logger.exception("Email sender failed for template '%s'", message.template.value)
        raise InternalError() from e


async def open_session(
    session: AsyncSession,
    *,
    sessions: SessionStore,
    user_id: uuid.UUID,
    metadata: SessionMetadata,
) -> tuple[Session, GrantResponse]:
    """Resolve the user's scope, allocate a session and mint its tokens."""
    scope = await resolve(session, user_id)
    handle = sessions.create(user_id)
    tokens = await sessions.issue(handle, metadata, scope)
    return handle, GrantResponse.from_tokens(tokens, scope.to_scope())


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------

async def password_grant(
    session: AsyncSession,
    *,
    hasher: PasswordHasher,
    sessions: SessionStore,
    email: str,
    password: str,
    metadata: SessionMetadata,
    events: EventCollector | None = None,
) -> GrantResponse:
    """Authenticate with primary email and password.

    Unknown email and wrong password are indistinguishable to the caller and
    cost the same KDF run.

    Raises:
        Unauthenticated: Invalid credentials (code: invalid_credentials).
        Forbidden: The account must reset its password first.
    """
    user = await user_repo.get_user_by_primary_email(session, normalize_email(email))
    result = await hasher.verify_or_dummy(user.password_hash if user else None, password)

    if result is not VerifyResult.OK:
        if result is VerifyResult.MALFORMED:
            logger.error("Stored password hash of user %s is malformed", user.id)
        raise Unauthenticated("Invalid email or password", code="invalid_credentials")

    if user.reset_password:
        raise Forbidden(
            "Password must be reset before signing in", code="password_reset_required",
        )

    handle, response = await open_session(
        session, sessions=sessions, user_id=user.id, metadata=metadata,
    )

    if events is not None:
        from authkeep.events import Login

        events.collect("login", Login(
            user_id=user.id, session_id=handle.session_id, provider="password",
            ip_address=metadata.ip, device_name=metadata.device_name,
        ))

    return response


async def refresh_grant(
    session: AsyncSession,
    *,
    tokens: TokenManager,
    sessions: SessionStore,
    refresh_token: str,
    metadata: SessionMetadata,
    events: EventCollector | None = None,
) -> GrantResponse:
    """Rotate the token pair of an existing session.

    The presented token must equal the one stored in the session. A stale
    token means it was rotated out and replayed: the session is revoked.

    Raises:
        ValidationFailed: The token cannot be parsed (``{"refresh_token": ["parse"]}``).
        Unauthenticated: Bad signature, expired, revoked or reused token.
    """
    try:
        claims = tokens.verify(refresh_token, RefreshTokenClaims)
    except TokenParseError:
        raise ValidationFailed({"refresh_token": ["parse"]})
    except TokenError:
        raise Unauthenticated("Invalid refresh token", code="refresh_token_invalid")

    handle = Session(user_id=claims.sub, session_id=claims.sid)
    stored = await sessions.fetch(handle)

    if not hmac.compare_digest(stored.refresh_token, refresh_token):
        logger.warning(
            "Refresh token reuse on session %s of user %s, revoking",
            handle.session_id, handle.user_id,
        )
        await sessions.revoke(handle)
        raise RefreshTokenReuse(handle.user_id, handle.session_id)

    scope = await resolve(session, handle.user_id)
    renewed = await sessions.renew(handle, metadata, scope)

    if events is not None:
        from authkeep.events import TokenRefreshed

        events.collect("token_refreshed", TokenRefreshed(
            user_id=handle.user_id, session_id=handle.session_id,
            ip_address=metadata.ip, device_name=metadata.device_name,
        ))

    return GrantResponse.from_tokens(renewed, scope.to_scope())


# ---------------------------------------------------------------------------
# Registration and account completion
# ---------------------------------------------------------------------------

async def register(
    session: AsyncSession,
    *,
    config: AuthKeepConfig,
    redis: Redis,
    hasher: PasswordHasher,
    sessions: SessionStore,
    validators: CredentialValidators,
    mailer: EmailSender,
    username: str,
    email: str,
    password: str,
    metadata: SessionMetadata,
    events: EventCollector | None = None,
) -> RegisterResponse:
    """Create a user with a primary email, send a verification code, open a session.

    Raises:
        ValidationFailed: Username, email or password rejected by the validators.
        Conflict: Username or email already taken (field: username / email).
        InternalError: The verification email could not be delivered.
    """
    email = normalize_email(email)
    validators.validate(username=username, email=email, password=password)
    password_hash = await hasher.hash(password)

    try:
        user = await user_repo.create_user(session, username=username, password_hash=password_hash)
        row = await email_repo.create_email(
            session, user_id=user.id, email=email, verified=False, is_primary=True,
        )
    except IntegrityError as e:
        _raise_conflict(e)

    # No Redis state may outlive a failed delivery
    code = await _store_verification_code(session, config=config, redis=redis, user_id=user.id, row=row)
    try:
        await _send_verification_code(mailer, email=email, code=code, ttl=config.email_verify_ttl_seconds)
    except InternalError:
        await _email_otp(config, redis, user.id).discard(email)
        raise
    handle, response = await open_session(
        session, sessions=sessions, user_id=user.id, metadata=metadata,
    )

    if events is not None:
        from authkeep.events import EmailVerificationRequested, Login, UserCreated

        events.collect("user_created", UserCreated(user_id=user.id, email=email, provider="password"))
        events.collect("email_verification_requested", EmailVerificationRequested(
            user_id=user.id, email=email,
        ))
        events.collect("login", Login(
            user_id=user.id, session_id=handle.session_id, provider="password",
            ip_address=metadata.ip, device_name=metadata.device_name,
        ))

    return RegisterResponse(user_id=user.id, tokens=response)


async def complete_account(
    session: AsyncSession,
    *,
    hasher: PasswordHasher,
    validators: CredentialValidators,
    user_id: uuid.UUID,
    username: str | None = None,
    password: str | None = None,
    events: EventCollector | None = None,
) -> None:
    """Set the username and/or password left pending by an OAuth sign-up.

    Only fields still flagged as pending can be set this way.

    Raises:
        ValidationFailed: Nothing to set, or a value rejected by the validators.
        Forbidden: A given field is not pending completion.
        Conflict: Username already taken.
    """
    if username is None and password is None:
        raise ValidationFailed({"username": ["required"], "password": ["required"]})
    validators.validate(username=username, password=password)

    user = await user_repo.get_user_by_id(session, user_id)
    if user is None:
        raise NotFound("User not found", code="user_not_found")

    updates: dict[str, object] = {}
    if username is not None:
        if not user.reset_username:
            raise Forbidden("Username is already set", code="account_complete")
        updates["username"] = username
        updates["reset_username"] = False
    if password is not None:
        if not user.reset_password:
            raise Forbidden("Password is already set", code="account_complete")
        updates["password_hash"] = await hasher.hash(password)
        updates["reset_password"] = False

    try:
        await user_repo.update_user(session, user, **updates)
    except IntegrityError as e:
        _raise_conflict(e)

    if events is not None:
        from authkeep.events import AccountCompleted

        fields = [name for name in ("username", "password") if f"reset_{name}" in updates]
        events.collect("account_completed", AccountCompleted(user_id=user_id, fields=fields))


async def change_password(
    session: AsyncSession,
    *,
    hasher: PasswordHasher,
    sessions: SessionStore,
    validators: CredentialValidators,
    user_id: uuid.UUID,
    old_password: str,
    new_password: str,
    keep_session: uuid.UUID | None = None,
    events: EventCollector | None = None,
) -> None:
    """Change a password (old password required) and sign out other sessions.

    Raises:
        NotFound: User does not exist (code: user_not_found).
        Unauthenticated: Old password is wrong (code: invalid_password).
        ValidationFailed: New password rejected by the validators.
    """
    user = await user_repo.get_user_by_id(session, user_id)
    if user is None:
        raise NotFound("User not found", code="user_not_found")

    if await hasher.verify(user.password_hash, old_password) is not VerifyResult.OK:
        raise Unauthenticated("Invalid password", code="invalid_password")
    validators.validate(password=new_password)

    new_hash = await hasher.hash(new_password)
    await user_repo.update_user(session, user, password_hash=new_hash, reset_password=False)
    await sessions.revoke_all(user.id, exclude=keep_session)

    if events is not None:
        from authkeep.events import PasswordChanged

        events.collect("password_changed", PasswordChanged(user_id=user.id))


async def add_email(
    session: AsyncSession,
    *,
    config: AuthKeepConfig,
    redis: Redis,
    hasher: PasswordHasher,
    validators: CredentialValidators,
    mailer: EmailSender,
    user_id: uuid.UUID,
    email: str,
    password: str,
    events: EventCollector | None = None,
) -> None:
    """Attach another address to an account and send it a verification code.

    Raises:
        Unauthenticated: Password is wrong (code: invalid_password).
        Conflict: The address belongs to an account already (field: email).
    """
    email = normalize_email(email)
    validators.validate(email=email)
    user = await user_repo.get_user_by_id(session, user_id)
    if user is None:
        raise NotFound("User not found", code="user_not_found")
    if await hasher.verify(user.password_hash, password) is not VerifyResult.OK:
        raise Unauthenticated("Invalid password", code="invalid_password")

    is_primary = await email_repo.get_primary_email(session, user_id) is None
    try:
        row = await email_repo.create_email(
            session, user_id=user_id, email=email, is_primary=is_primary,
        )
    except IntegrityError as e:
        _raise_conflict(e)

    code = await _store_verification_code(session, config=config, redis=redis, user_id=user_id, row=row)
    await _send_verification_code(mailer, email=email, code=code, ttl=config.email_verify_ttl_seconds)

    if events is not None:
        from authkeep.events import EmailVerificationRequested

        events.collect("email_verification_requested", EmailVerificationRequested(
            user_id=user_id, email=email,
        ))


async def get_profile(session: AsyncSession, *, user_id: uuid.UUID) -> UserProfile:
    user = await user_repo.get_user_by_id(session, user_id)
    if user is None:
        raise NotFound("User not found", code="user_not_found")
    emails = await email_repo.get_emails_by_user(session, user_id)
    roles = await role_repo.get_roles(session, user_id)
    return UserProfile(
        id=user.id,
        username=user.username,
        bio=user.bio,
        image=user.image,
        reset_username=bool(user.reset_username),
        reset_password=bool(user.reset_password),
        emails=[
            EmailResponse(email=e.email, verified=e.verified, is_primary=e.is_primary)
            for e in emails
        ],
        roles=roles,
        created_at=user.created_at,
    )


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------

def _email_otp(config: AuthKeepConfig, redis: Redis, user_id: uuid.UUID) -> EmailVerifyOtp:
    return EmailVerifyOtp(
        redis, user_id, should_hash=config.hash_otp_keys, ttl=config.email_verify_ttl_seconds,
    )


async def _store_verification_code(
    session: AsyncSession,
    *,
    config: AuthKeepConfig,
    redis: Redis,
    user_id: uuid.UUID,
    row: Email,
) -> str:
    """Store a verification code for ``row`` and stamp the confirmation time.

    An outstanding code is reused while codes are stored in clear. With
    hashed keys the outstanding digests cannot be sent again, so they are
    discarded and a new code is minted.
    """
    otp = _email_otp(config, redis, user_id)
    outstanding = await otp.list_outstanding(row.email)
    if outstanding and not otp.should_hash:
        code = outstanding[0]
    else:
        if outstanding:
            await otp.discard(row.email)
        code = otp.generate()
        await otp.store(code, row.email)
    await email_repo.mark_confirmation_sent(session, row)
    return code


async def _send_verification_code(mailer: EmailSender, *, email: str, code: str, ttl: int) -> None:
    await _send_mail(mailer, email, EmailMessage(
        EmailTemplate.VERIFY_EMAIL, {"code": code, "ttl_seconds": ttl},
    ))


async def request_email_verification(
    session: AsyncSession,
    *,
    config: AuthKeepConfig,
    redis: Redis,
    mailer: EmailSender,
    user_id: uuid.UUID,
    email: str,
    events: EventCollector | None = None,
) -> None:
    """Send (or resend) a verification code for one of the user's addresses.

    Raises:
        NotFound: The address does not belong to the user (code: email_not_found).
        ValidationFailed: The address is already verified (``{"email": ["verified"]}``).
    """
    email = normalize_email(email)
    row = await email_repo.get_email(session, email)
    if row is None or row.user_id != user_id:
        raise NotFound("Email not found", code="email_not_found")
    if row.verified:
        raise ValidationFailed({"email": ["verified"]})

    code = await _store_verification_code(session, config=config, redis=redis, user_id=user_id, row=row)
    await _send_verification_code(mailer, email=email, code=code, ttl=config.email_verify_ttl_seconds)

    if events is not None:
        from authkeep.events import EmailVerificationRequested

        events.collect("email_verification_requested", EmailVerificationRequested(
            user_id=user_id, email=email,
        ))


async def verify_email(
    session: AsyncSession,
    *,
    config: AuthKeepConfig,
    redis: Redis,
    user_id: uuid.UUID,
    code: str,
    events: EventCollector | None = None,
) -> str:
    """Consume a verification code and mark its address verified.

    Returns:
        The verified email address.

    Raises:
        NotFound: Unknown, used or expired code (code: otp_not_found).
    """
    email = await _email_otp(config, redis, user_id).consume(code)
    row = await email_repo.get_email(session, email)
    if row is None or row.user_id != user_id:
        logger.warning("Verification code of user %s points at a foreign address", user_id)
        raise NotFound("Invalid or expired code", code="otp_not_found")
    await email_repo.mark_verified(session, row)

    if events is not None:
        from authkeep.events import EmailVerified

        events.collect("email_verified", EmailVerified(user_id=user_id, email=email))

    return email


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

def _reset_otp(config: AuthKeepConfig, redis: Redis) -> PasswordResetOtp:
    return PasswordResetOtp(
        redis, should_hash=config.hash_otp_keys, ttl=config.password_reset_ttl_seconds,
    )


async def request_password_reset(
    session: AsyncSession,
    *,
    config: AuthKeepConfig,
    redis: Redis,
    mailer: EmailSender,
    email: str,
    events: EventCollector | None = None,
) -> None:
    """Send a reset code to ``email`` if it is known. Silent otherwise."""
    email = normalize_email(email)
    row = await email_repo.get_email(session, email)
    if row is None:
        logger.info("Password reset requested for an unknown address")
        return

    otp = _reset_otp(config, redis)
    code = otp.generate()
    await otp.store(code, email)
    await _send_mail(mailer, email, EmailMessage(
        EmailTemplate.RESET_PASSWORD,
        {"code": code, "ttl_seconds": config.password_reset_ttl_seconds},
    ))

    if events is not None:
        from authkeep.events import PasswordResetRequested

        events.collect("password_reset_requested", PasswordResetRequested(
            user_id=row.user_id, email=email,
        ))


async def consume_reset_code(*, config: AuthKeepConfig, redis: Redis, code: str) -> str:
    """Consume a reset code and return the address it was sent to.

    Raises:
        NotFound: Unknown, used or expired code (code: otp_not_found).
    """
    return await _reset_otp(config, redis).consume(code)


async def reset_password(
    session: AsyncSession,
    *,
    config: AuthKeepConfig,
    redis: Redis,
    hasher: PasswordHasher,
    sessions: SessionStore,
    validators: CredentialValidators,
    mailer: EmailSender,
    code: str,
    new_password: str,
    events: EventCollector | None = None,
) -> None:
    """Set a new password with a reset code, sign out everywhere, notify the user.

    The password is validated before the code is consumed, so a rejected
    password does not burn the code.

    Raises:
        ValidationFailed: New password rejected by the validators.
        NotFound: Unknown, used or expired code (code: otp_not_found).
    """
    validators.validate(password=new_password)
    email = await consume_reset_code(config=config, redis=redis, code=code)

    user = await user_repo.get_user_by_email(session, email)
    if user is None:
        raise NotFound("Invalid or expired code", code="otp_not_found")

    new_hash = await hasher.hash(new_password)
    await user_repo.update_user(session, user, password_hash=new_hash, reset_password=False)
    await sessions.revoke_all(user.id)

    primary = await email_repo.get_primary_email(session, user.id)
    await _send_mail(
        mailer,
        primary.email if primary is not None else email,
        EmailMessage(EmailTemplate.PASSWORD_CHANGED),
    )

    if events is not None:
        from authkeep.events import PasswordReset

        events.collect("password_reset", PasswordReset(user_id=user.id))
