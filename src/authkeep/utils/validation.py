"""Input validators for credentials.

Validators are plain objects built once by ``AuthKeep`` and handed to the
flows that need them, so tests and deployments can swap the rules.
"""

import re
from dataclasses import dataclass, field

from authkeep.errors import ValidationFailed


@dataclass(frozen=True, slots=True)
class PatternValidator:
    """Checks a value against a compiled regular expression."""

    pattern: re.Pattern[str]
    reason: str = "invalid"

    @classmethod
    def compile(cls, pattern: str, reason: str = "invalid") -> "PatternValidator":
        return cls(re.compile(pattern), reason)

    def check(self, value: str) -> str | None:
        return None if self.pattern.fullmatch(value) else self.reason


@dataclass(frozen=True, slots=True)
class LengthValidator:
    min_length: int
    max_length: int

    def check(self, value: str) -> str | None:
        if len(value) < self.min_length:
            return "too_short"
        if len(value) > self.max_length:
            return "too_long"
        return None


USERNAME_PATTERN = r"[a-zA-Z][a-zA-Z0-9_-]{3,32}"
EMAIL_PATTERN = r"[^@\s]+@[^@\s]+\.[^@\s]+"


@dataclass(frozen=True, slots=True)
class CredentialValidators:
    """Field validators for usernames, email addresses and passwords."""

    username: PatternValidator = field(default_factory=lambda: PatternValidator.compile(USERNAME_PATTERN))
    email: PatternValidator = field(default_factory=lambda: PatternValidator.compile(EMAIL_PATTERN))
    password: LengthValidator = field(default_factory=lambda: LengthValidator(8, 128))

    def validate(self, **values: str | None) -> None:
        """Check every given field and raise one error listing all failures.

        Fields passed as None are skipped.

        Raises:
            ValidationFailed: If any field fails its validator.
        """
        errors: dict[str, list[str]] = {}
        for name, value in values.items():
            if value is None:
                continue
            reason = getattr(self, name).check(value)
            if reason is not None:
                errors[name] = [reason]
        if errors:
            raise ValidationFailed(errors)


def normalize_email(email: str) -> str:
    return email.strip().lower()
