"""Social login repository — links between provider identities and users."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authkeep.models.social_login import SocialLogin
from authkeep.repositories.email import _insert_for
from authkeep.utils import utc_now


async def get_social_login(
    session: AsyncSession,
    provider: str,
    provider_user_id: str,
) -> SocialLogin | None:
    statement = select(SocialLogin).where(
        SocialLogin.provider == provider,
        SocialLogin.provider_user_id == provider_user_id,
    )
    result = (await session.execute(statement)).scalars()
    return result.first()


async def get_social_logins_by_user(session: AsyncSession, user_id: uuid.UUID) -> list[SocialLogin]:
    statement = select(SocialLogin).where(SocialLogin.user_id == user_id)
    result = (await session.execute(statement)).scalars()
    return list(result.all())


async def upsert_social_login(
    session: AsyncSession,
    *,
    email_id: uuid.UUID,
    user_id: uuid.UUID,
    provider: str,
    provider_user_id: str,
) -> None:
    """Link a provider identity to a user. First link wins: a conflicting
    insert is a no-op and never reassigns the existing link.
    """
    insert = _insert_for(session)
    stmt = insert(SocialLogin).values(
        id=uuid.uuid4(),
        email_id=email_id,
        user_id=user_id,
        provider=provider,
        provider_user_id=provider_user_id,
        created_at=utc_now(),
    ).on_conflict_do_nothing(index_elements=["provider", "provider_user_id"])
    await session.execute(stmt)
