"""Key-value store connection (Redis) and error translation."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from redis.asyncio import Redis
from redis.exceptions import RedisError

from authkeep.errors import InternalError

logger = logging.getLogger("authkeep.kv")


def create_redis(redis_url: str) -> Redis:
    """Create an asyncio Redis client that returns ``str`` values."""
    return Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate Redis failures into ``InternalError``.

    Connectivity loss is fatal for the in-flight request: nothing is retried.
    """
    try:
        yield
    except RedisError as e:
        logger.exception("Key-value store failure during %s", operation)
        raise InternalError() from e
