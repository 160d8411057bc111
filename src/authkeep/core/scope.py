"""Role to permission mapping and OAuth2-style scope strings."""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from authkeep.repositories import role as role_repo

logger = logging.getLogger("authkeep.scope")


class Permission(str, enum.Enum):
    USER_VIEW = "user.view"
    USER_CREATE = "user.create"
    USER_UPDATE = "user.update"
    USER_DELETE = "user.delete"


class Role(str, enum.Enum):
    ROOT = "root"
    MODERATOR = "moderator"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ROOT: frozenset(Permission),
    Role.MODERATOR: frozenset({Permission.USER_VIEW}),
}


class ScopeParseError(ValueError):
    """A scope string contained a token that is not a known permission."""


@dataclass(frozen=True, slots=True)
class PermissionSet:
    """De-duplicated set of permissions, serialized as a space-separated scope."""

    permissions: frozenset[Permission] = frozenset()

    @classmethod
    def from_roles(cls, roles: Iterable[str]) -> PermissionSet:
        """Flatten role names into their permissions. Unknown roles are skipped."""
        permissions: set[Permission] = set()
        for name in roles:
            try:
                role = Role(name)
            except ValueError:
                logger.warning("Ignoring unknown role '%s'", name)
                continue
            permissions |= ROLE_PERMISSIONS[role]
        return cls(frozenset(permissions))

    @classmethod
    def parse(cls, scope: str) -> PermissionSet:
        """Parse a scope string. Any unknown token is an error.

        Raises:
            ScopeParseError: If a token does not name a ``Permission``.
        """
        permissions: set[Permission] = set()
        for token in scope.split():
            try:
                permissions.add(Permission(token))
            except ValueError:
                raise ScopeParseError(f"Unknown permission '{token}'") from None
        return cls(frozenset(permissions))

    def to_scope(self) -> str:
        return " ".join(sorted(p.value for p in self.permissions))

    def has_permission(self, permission: Permission) -> bool:
        return permission in self.permissions

    def has_all(self, *permissions: Permission) -> bool:
        return all(p in self.permissions for p in permissions)

    def __len__(self) -> int:
        return len(self.permissions)


async def resolve(session: AsyncSession, user_id: uuid.UUID) -> PermissionSet:
    """Load a user's roles and expand them to a permission set."""
    roles = await role_repo.get_roles(session, user_id)
    return PermissionSet.from_roles(roles)
