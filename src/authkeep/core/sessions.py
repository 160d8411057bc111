"""Redis-backed session store — one record per (user, device session).

Record layout: key ``user:<user_id>:session_id:<session_id>`` holding the JSON
``SessionData`` document, with TTL equal to the refresh token lifetime. The
record's existence is the authorization check for a refresh.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from pydantic import ValidationError
from redis.asyncio import Redis

from authkeep.core.schemas import SessionData, SessionMetadata, Tokens
from authkeep.core.scope import PermissionSet
from authkeep.core.tokens import TokenManager
from authkeep.errors import InternalError, Unauthenticated
from authkeep.kv import store_errors

logger = logging.getLogger("authkeep.sessions")


def session_key(user_id: uuid.UUID, session_id: uuid.UUID) -> str:
    return f"user:{user_id}:session_id:{session_id}"


def _user_pattern(user_id: uuid.UUID) -> str:
    return f"user:{user_id}:session_id:*"


@dataclass(frozen=True, slots=True)
class Session:
    """Address of a session record."""

    user_id: uuid.UUID
    session_id: uuid.UUID

    @classmethod
    def new(cls, user_id: uuid.UUID) -> Session:
        return cls(user_id=user_id, session_id=uuid.uuid4())

    @property
    def key(self) -> str:
        return session_key(self.user_id, self.session_id)


class SessionStore:
    """Creates, renews, lists and revokes sessions, minting tokens on write."""

    def __init__(self, redis: Redis, tokens: TokenManager) -> None:
        self._redis = redis
        self._tokens = tokens

    def create(self, user_id: uuid.UUID) -> Session:
        """Allocate a fresh session id. Nothing is written until ``issue``."""
        return Session.new(user_id)

    async def issue(
        self, session: Session, metadata: SessionMetadata, scope: PermissionSet,
    ) -> Tokens:
        """Mint a token pair and write the session record with its TTL."""
        return await self._write(session, metadata, scope)

    async def renew(
        self, session: Session, metadata: SessionMetadata, scope: PermissionSet,
    ) -> Tokens:
        """Rotate tokens for an existing session. The record is replaced wholesale."""
        return await self._write(session, metadata, scope)

    async def _write(
        self, session: Session, metadata: SessionMetadata, scope: PermissionSet,
    ) -> Tokens:
        access_token = self._tokens.issue_access(session.user_id, session.session_id, scope.to_scope())
        refresh_token = self._tokens.issue_refresh(session.user_id, session.session_id)
        record = SessionData(
            metadata=metadata, session_id=session.session_id, refresh_token=refresh_token,
        )

        # SET and EXPIRE go out as one MULTI/EXEC so a record never lacks a TTL.
        with store_errors("session write"):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(session.key, record.model_dump_json())
                pipe.expire(session.key, self._tokens.refresh_ttl)
                await pipe.execute()

        return Tokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._tokens.access_ttl,
        )

    async def fetch(self, session: Session) -> SessionData:
        """Load a session record.

        Raises:
            Unauthenticated: The session was revoked or has expired.
        """
        with store_errors("session fetch"):
            raw = await self._redis.get(session.key)
        if raw is None:
            raise Unauthenticated("Session expired or revoked", code="session_not_found")
        try:
            return SessionData.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Corrupt session record at %s: %s", session.key, e)
            raise InternalError() from e

    async def list_for_user(self, user_id: uuid.UUID) -> list[SessionData]:
        """All live sessions of a user, most recently used first.

        Records that disappear between the scan and the read are omitted.
        """
        with store_errors("session listing"):
            keys = [key async for key in self._redis.scan_iter(match=_user_pattern(user_id))]
            if not keys:
                return []
            values = await self._redis.mget(keys)

        sessions: list[SessionData] = []
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            try:
                sessions.append(SessionData.model_validate_json(raw))
            except ValidationError:
                logger.warning("Skipping corrupt session record at %s", key)
        sessions.sort(key=lambda s: s.metadata.last_accessed, reverse=True)
        return sessions

    async def revoke(self, session: Session) -> bool:
        """Delete a session record. Idempotent; returns whether one existed."""
        with store_errors("session revoke"):
            deleted = await self._redis.delete(session.key)
        return deleted > 0

    async def revoke_all(
        self, user_id: uuid.UUID, *, exclude: uuid.UUID | None = None,
    ) -> int:
        """Delete every session of a user except ``exclude``. Returns the count."""
        keep = session_key(user_id, exclude) if exclude is not None else None
        with store_errors("session revoke"):
            keys = [
                key async for key in self._redis.scan_iter(match=_user_pattern(user_id))
                if key != keep
            ]
            if not keys:
                return 0
            return await self._redis.delete(*keys)
