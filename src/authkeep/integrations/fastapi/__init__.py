"""FastAPI integration for AuthKeep."""

from authkeep.integrations.fastapi.deps import create_current_user_dep, create_require_permission_dep
from authkeep.integrations.fastapi.router import create_auth_router

__all__ = [
    "create_auth_router",
    "create_current_user_dep",
    "create_require_permission_dep",
]
