import re
from typing import Optional

# Same shape as the registration form accepts: word chars with optional
# dots/dashes, an @, and a 2-3 letter TLD.
EMAIL_PATTERN = re.compile(r"^\w+([\.-]?\w+)*@\w+([\.-]?\w+)*(\.\w{2,3})+$")


class EmailValidator:
    """Email normalization and format check used for student records."""

    @staticmethod
    def normalize_email(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return EMAIL_PATTERN.match(EmailValidator.normalize_email(email)) is not None


class PasswordValidator:
    """Password rules for student accounts."""

    MIN_LENGTH = 6

    @staticmethod
    def is_valid_password(password: Optional[str], min_length: int = MIN_LENGTH) -> bool:
        if password is None:
            return False
        return len(password) >= min_length


class TextValidator:
    """Basic checks for free-text fields."""

    @staticmethod
    def is_blank(text: Optional[str]) -> bool:
        return text is None or not str(text).strip()

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return not TextValidator.is_blank(title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        if TextValidator.is_blank(author):
            return False
        return not author.strip().isdigit()

    @staticmethod
    def first_missing(**fields) -> Optional[str]:
        """Return the name of the first blank field, or None if all are present."""
        for name, value in fields.items():
            if TextValidator.is_blank(value):
                return name
        return None
