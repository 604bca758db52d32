import re
from typing import Any

from firekit.errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6


def validate_email(email: Any) -> bool:
    return isinstance(email, str) and bool(EMAIL_PATTERN.fullmatch(email))


def validate_password(password: Any) -> bool:
    return isinstance(password, str) and len(password) >= MIN_PASSWORD_LENGTH


def assert_email_password(email: Any, password: Any) -> None:
    if not isinstance(email, str) or not isinstance(password, str):
        raise ValidationError("Email and password must be strings")
    if not validate_email(email):
        raise ValidationError("Invalid email format")
    if not validate_password(password):
        raise ValidationError("Password must be at least 6 characters long")


def assert_new_password(password: Any, message: str = "Password must be at least 6 characters long") -> None:
    if not isinstance(password, str) or not validate_password(password):
        raise ValidationError(message)
