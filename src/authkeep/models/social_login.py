import uuid
from datetime import datetime

from sqlmodel import Column, Field, SQLModel, UniqueConstraint

from authkeep.utils import TZDateTime, utc_now


class SocialLogin(SQLModel, table=True):
    __tablename__ = "social_logins"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_social_logins_provider_user"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    email_id: uuid.UUID = Field(foreign_key="emails.id")
    user_id: uuid.UUID = Field(foreign_key="users.id", index=True)
    provider: str = Field(max_length=50)
    provider_user_id: str = Field(max_length=255)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(TZDateTime(), nullable=False),
    )
