"""Core OAuth logic — provider round-trips and identity reconciliation.

Framework-agnostic. ``handle_assertion`` turns an authorization code into a
local user id; the caller then opens a session exactly as for a password.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from authkeep.errors import InternalError, UpstreamFailure, ValidationFailed
from authkeep.models.email import Email
from authkeep.models.user import User
from authkeep.providers.base import OAuthProvider, ProviderProfile, ProviderResponseError
from authkeep.repositories import email as email_repo
from authkeep.repositories import social_login as social_login_repo
from authkeep.repositories import user as user_repo
from authkeep.utils import default_avatar_url
from authkeep.utils.passwords import PasswordHasher
from authkeep.utils.validation import normalize_email

if TYPE_CHECKING:
    from authkeep.events import EventCollector

logger = logging.getLogger("authkeep.oauth")


async def fetch_provider_profile(
    provider: OAuthProvider,
    client: httpx.AsyncClient,
    *,
    code: str,
    redirect_uri: str,
) -> ProviderProfile:
    """Exchange the code, fetch the profile and resolve the email.

    The authorization code is single-use at the provider, so nothing here
    is retried.

    Raises:
        UpstreamFailure: Network error, timeout, non-2xx or unusable payload.
            The detail is logged, never returned.
    """
    try:
        access_token = await provider.exchange_code(client, code=code, redirect_uri=redirect_uri)
        raw_profile = await provider.fetch_profile(client, access_token)
        return await provider.resolve_email(client, access_token, raw_profile)
    except httpx.HTTPStatusError as e:
        logger.warning(
            "%s returned HTTP %s for %s",
            provider.name, e.response.status_code, e.request.url,
        )
        raise UpstreamFailure() from e
    except httpx.HTTPError as e:
        logger.warning("Request to %s failed: %r", provider.name, e)
        raise UpstreamFailure() from e
    except (ProviderResponseError, ValueError, KeyError, TypeError) as e:
        logger.warning("Unusable response from %s: %r", provider.name, e)
        raise UpstreamFailure() from e


async def find_or_create_user(
    session: AsyncSession,
    *,
    hasher: PasswordHasher,
    email: str,
) -> tuple[User, bool]:
    """Find the owner of ``email`` or create a placeholder user.

    Placeholder users get a random username and password and must complete
    both before the password grant accepts them.

    Returns:
        (user, created) tuple.
    """
    user = await user_repo.get_user_by_email(session, email)
    if user is not None:
        return user, False
    password_hash = await hasher.placeholder_hash()
    user = await user_repo.create_placeholder_user(session, password_hash=password_hash)
    return user, True


async def _claim_identity(
    session: AsyncSession,
    *,
    hasher: PasswordHasher,
    profile: ProviderProfile,
    email: str,
) -> tuple[User, bool, Email, uuid.UUID | None]:
    link = await social_login_repo.get_social_login(
        session, profile.provider, profile.provider_user_id,
    )
    if link is not None:
        user = await user_repo.get_user_by_id(session, link.user_id)
        if user is None:
            raise InternalError()
        created = False
    else:
        user, created = await find_or_create_user(session, hasher=hasher, email=email)

    row = await email_repo.upsert_email(
        session, user_id=user.id, email=email, verified=profile.email_verified,
    )
    return user, created, row, link.email_id if link is not None else None


async def reconcile_identity(
    session: AsyncSession,
    *,
    hasher: PasswordHasher,
    profile: ProviderProfile,
    events: EventCollector | None = None,
) -> uuid.UUID:
    """Merge a provider identity into the local user/email/social-login tables.

    Runs inside the caller's transaction: find-or-create the user, upsert the
    email, upsert the social login (first link wins) and fill missing
    profile fields. Any failure rolls the whole transaction back.
    """
    email = normalize_email(profile.email or "")
    user, created, row, linked_email_id = await _claim_identity(
        session, hasher=hasher, profile=profile, email=email,
    )

    if created and row.user_id != user.id:
        # A concurrent sign-up inserted this address first; adopt its owner.
        logger.info("Concurrent sign-up for the same address, reusing user %s", row.user_id)
        await session.rollback()
        user, created, row, linked_email_id = await _claim_identity(
            session, hasher=hasher, profile=profile, email=email,
        )
        if created and row.user_id != user.id:
            raise InternalError()

    email_id = row.id if row.user_id == user.id else linked_email_id
    await social_login_repo.upsert_social_login(
        session,
        email_id=email_id,
        user_id=user.id,
        provider=profile.provider,
        provider_user_id=profile.provider_user_id,
    )

    await user_repo.backfill_profile_metadata(
        session,
        user.id,
        bio=profile.bio,
        image=profile.image or default_avatar_url(str(user.id)),
    )

    if events is not None:
        from authkeep.events import OAuthLink, UserCreated

        if created:
            events.collect("user_created", UserCreated(
                user_id=user.id, email=email, provider=profile.provider,
            ))
        elif linked_email_id is None:
            events.collect("oauth_link", OAuthLink(
                user_id=user.id, email=email, provider=profile.provider,
            ))

    return user.id


async def handle_assertion(
    session: AsyncSession,
    *,
    provider: OAuthProvider,
    client: httpx.AsyncClient,
    hasher: PasswordHasher,
    code: str,
    redirect_uri: str,
    events: EventCollector | None = None,
) -> uuid.UUID:
    """Resolve an authorization code to a local user id.

    Raises:
        UpstreamFailure: The provider could not be reached or answered badly.
        ValidationFailed: No email could be resolved (``{"email": ["missing"]}``).
    """
    profile = await fetch_provider_profile(
        provider, client, code=code, redirect_uri=provider.redirect_uri or redirect_uri,
    )
    if not profile.email:
        raise ValidationFailed({"email": ["missing"]})

    return await reconcile_identity(session, hasher=hasher, profile=profile, events=events)
