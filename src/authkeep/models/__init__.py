"""AuthKeep SQLModel tables — central registry.

Import all models here so SQLModel.metadata is populated.
"""

from authkeep.models.email import Email
from authkeep.models.social_login import SocialLogin
from authkeep.models.user import User
from authkeep.models.user_role import UserRole

__all__ = [
    "User",
    "Email",
    "SocialLogin",
    "UserRole",
]
