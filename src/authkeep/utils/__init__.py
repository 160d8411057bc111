from datetime import UTC, datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

AVATAR_URL = "https://api.dicebear.com/9.x/thumbs/svg?backgroundColor=b6e3f4,c0aede,d1d4f9&seed={seed}"


def utc_now() -> datetime:
    return datetime.now(UTC)


def default_avatar_url(seed: str) -> str:
    """Generated avatar used when a provider supplies no profile image."""
    return AVATAR_URL.format(seed=seed)


class TZDateTime(TypeDecorator):
    """DateTime that ensures timezone-aware values across all backends.

    PostgreSQL returns timezone-aware datetimes natively.
    SQLite returns naive datetimes; this adds UTC on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
