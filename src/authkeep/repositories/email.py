"""Email repository — database operations for user email addresses."""

import uuid

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from authkeep.models.email import Email
from authkeep.utils import utc_now


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT that supports ON CONFLICT."""
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def get_email(session: AsyncSession, email: str) -> Email | None:
    statement = select(Email).where(Email.email == email).execution_options(populate_existing=True)
    result = (await session.execute(statement)).scalars()
    return result.first()


async def get_primary_email(session: AsyncSession, user_id: uuid.UUID) -> Email | None:
    statement = select(Email).where(Email.user_id == user_id, Email.is_primary.is_(True))
    result = (await session.execute(statement)).scalars()
    return result.first()


async def get_emails_by_user(session: AsyncSession, user_id: uuid.UUID) -> list[Email]:
    statement = (
        select(Email)
        .where(Email.user_id == user_id)
        .order_by(Email.is_primary.desc(), Email.created_at)
    )
    result = (await session.execute(statement)).scalars()
    return list(result.all())


async def create_email(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    email: str,
    verified: bool = False,
    is_primary: bool = False,
) -> Email:
    """Insert an email row. A taken address raises IntegrityError on flush."""
    row = Email(user_id=user_id, email=email, verified=verified, is_primary=is_primary)
    session.add(row)
    await session.flush()
    await session.refresh(row)
    return row


async def upsert_email(
    session: AsyncSession,
    *,
    user_id: uuid.UUID,
    email: str,
    verified: bool,
) -> Email:
    """Insert an email for a user, or confirm it if it already exists.

    The primary flag is decided only on insert: the address becomes primary
    when the user has none yet. On conflict the existing row is marked
    verified and its pending confirmation cleared, provided it belongs to
    ``user_id``; rows owned by another user are never touched.
    """
    is_primary = await get_primary_email(session, user_id) is None
    now = utc_now()
    insert = _insert_for(session)
    stmt = insert(Email).values(
        id=uuid.uuid4(),
        user_id=user_id,
        email=email,
        verified=verified,
        is_primary=is_primary,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["email"],
        set_={"verified": True, "confirmation_sent_at": None, "updated_at": now},
        where=Email.user_id == user_id,
    )
    await session.execute(stmt)
    return await get_email(session, email)


async def mark_verified(session: AsyncSession, row: Email) -> Email:
    row.verified = True
    row.confirmation_sent_at = None
    row.updated_at = utc_now()
    session.add(row)
    await session.flush()
    return row


async def mark_confirmation_sent(session: AsyncSession, row: Email) -> Email:
    row.confirmation_sent_at = utc_now()
    row.updated_at = row.confirmation_sent_at
    session.add(row)
    await session.flush()
    return row
