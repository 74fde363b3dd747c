"""Password hashing and bearer tokens for students and the admin."""

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from config import settings
from errors import AuthenticationError

logger = logging.getLogger(__name__)

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
ADMIN_SUBJECT = "admin"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(plain_password, password_hash)


def create_access_token(subject: Any, role: str = ROLE_STUDENT, expires_minutes: Optional[int] = None) -> str:
    """Issue a signed token for ``subject`` that expires after the configured lifetime."""
    minutes = settings.jwt_expiration_minutes if expires_minutes is None else expires_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {"sub": str(subject), "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify a token and return its claims.

    Expired tokens and otherwise invalid tokens fail with different messages
    so the client can tell the user to log in again.
    """
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as e:
        raise AuthenticationError("Token expired. Please login again.") from e
    except JWTError as e:
        logger.debug(f"Token verification failed: {e}")
        raise AuthenticationError("Invalid token") from e


def check_admin_credentials(username: Optional[str], password: Optional[str]) -> bool:
    """Compare the submitted admin login with the configured one."""
    if not username or not password:
        return False
    user_ok = hmac.compare_digest(username.encode("utf-8"), settings.admin_username.encode("utf-8"))
    pass_ok = hmac.compare_digest(password.encode("utf-8"), settings.admin_password.encode("utf-8"))
    return user_ok and pass_ok
