"""User repository — database operations for users."""

import uuid

from sqlalchemy import func, select, update as sa_update
from sqlalchemy.ext.asyncio import AsyncSession

from authkeep.models.email import Email
from authkeep.models.user import User
from authkeep.utils import utc_now


async def get_user_by_id(session: AsyncSession, user_id: uuid.UUID) -> User | None:
    """Get a user by their ID."""
    return await session.get(User, user_id)


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    """Get the owner of an email address (primary or not)."""
    statement = select(User).join(Email, Email.user_id == User.id).where(Email.email == email)
    result = (await session.execute(statement)).scalars()
    return result.first()


async def get_user_by_primary_email(session: AsyncSession, email: str) -> User | None:
    """Get a user by their primary email, the only address used for sign-in."""
    statement = (
        select(User)
        .join(Email, Email.user_id == User.id)
        .where(Email.email == email, Email.is_primary.is_(True))
    )
    result = (await session.execute(statement)).scalars()
    return result.first()


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    password_hash: str,
    reset_username: bool | None = None,
    reset_password: bool | None = None,
) -> User:
    """Create a new user. Flushes, so a taken username raises IntegrityError here."""
    user = User(
        username=username,
        password_hash=password_hash,
        reset_username=reset_username,
        reset_password=reset_password,
    )
    session.add(user)
    await session.flush()
    await session.refresh(user)
    return user


async def create_placeholder_user(session: AsyncSession, *, password_hash: str) -> User:
    """Create a user whose username and password must be chosen later."""
    return await create_user(
        session,
        username=str(uuid.uuid4()),
        password_hash=password_hash,
        reset_username=True,
        reset_password=True,
    )


async def update_user(
    session: AsyncSession,
    user: User,
    **kwargs,
) -> User:
    """Update user fields."""
    for key, value in kwargs.items():
        if hasattr(user, key):
            setattr(user, key, value)
    user.updated_at = utc_now()
    session.add(user)
    await session.flush()
    await session.refresh(user)
    return user


async def backfill_profile_metadata(
    session: AsyncSession,
    user_id: uuid.UUID,
    *,
    bio: str | None,
    image: str | None,
) -> None:
    """Fill ``bio``/``image`` only where they are still NULL."""
    stmt = (
        sa_update(User)
        .where(User.id == user_id)
        .values(
            bio=func.coalesce(User.bio, bio),
            image=func.coalesce(User.image, image),
        )
        .execution_options(synchronize_session="fetch")
    )
    await session.execute(stmt)
    await session.flush()
