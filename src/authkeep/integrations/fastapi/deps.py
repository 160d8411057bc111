"""FastAPI dependencies — factory functions that produce dependencies bound to an AuthKeep instance."""

from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, Request

from authkeep.core.schemas import AuthenticatedUser
from authkeep.core.scope import Permission, PermissionSet
from authkeep.errors import AuthError

if TYPE_CHECKING:
    from authkeep.authkeep import AuthKeep


def create_current_user_dep(auth: "AuthKeep"):
    """Factory: create a FastAPI dependency that verifies the bearer access token."""

    async def current_user(request: Request) -> AuthenticatedUser:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            raise HTTPException(
                status_code=401,
                detail={"error": "token_missing", "message": "No access token provided"},
            )

        try:
            return auth.verify_access_token(auth_header[7:])
        except AuthError as e:
            raise HTTPException(status_code=e.status_code, detail={"error": e.code, "message": e.message})

    return current_user


def create_require_permission_dep(auth: "AuthKeep", *permissions: Permission | str):
    """Factory: create a FastAPI dependency that requires every given permission.

    Permissions are read from the token's scope, so changes to a user's roles
    apply from their next grant.
    """
    required = [Permission(p) for p in permissions]
    current_user_dep = auth.current_user

    async def check_permission(
        user: AuthenticatedUser = Depends(current_user_dep),
    ) -> AuthenticatedUser:
        granted = PermissionSet.parse(user.scope)
        if not granted.has_all(*required):
            raise HTTPException(
                status_code=403,
                detail={
                    "error": "insufficient_scope",
                    "message": f"Requires: {', '.join(p.value for p in required)}",
                },
            )
        return user

    return check_permission
