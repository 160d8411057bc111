import uuid
from datetime import datetime

from sqlmodel import Column, Field, SQLModel, UniqueConstraint

from authkeep.utils import TZDateTime, utc_now


class Email(SQLModel, table=True):
    __tablename__ = "emails"
    __table_args__ = (UniqueConstraint("email", name="uq_emails_email"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="users.id", index=True)
    email: str = Field(max_length=255)
    verified: bool = Field(default=False)
    is_primary: bool = Field(default=False)
    confirmation_sent_at: datetime | None = Field(
        default=None,
        sa_column=Column(TZDateTime(), nullable=True),
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(TZDateTime(), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(TZDateTime(), nullable=False),
    )
