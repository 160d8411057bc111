"""Outbound email collaborator.

AuthKeep only decides when to send and which code to embed. Rendering and
delivery belong to the ``EmailSender`` the application plugs in.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger("authkeep.mail")


class EmailTemplate(str, enum.Enum):
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"
    PASSWORD_CHANGED = "password_changed"


@dataclass(frozen=True, slots=True)
class EmailMessage:
    template: EmailTemplate
    data: dict[str, Any] = field(default_factory=dict)


class EmailSender(Protocol):
    async def send(self, recipient: str, message: EmailMessage) -> None: ...


class LoggingEmailSender:
    """Default sender: logs that a message would be sent, never its data."""

    async def send(self, recipient: str, message: EmailMessage) -> None:
        logger.info("Email '%s' queued for %s", message.template.value, recipient)
