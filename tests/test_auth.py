import pytest
from jose import jwt

from auth import (
    ADMIN_SUBJECT,
    ROLE_ADMIN,
    ROLE_STUDENT,
    check_admin_credentials,
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)
from config import settings
from errors import AuthenticationError


def test_hash_and_verify_password():
    hashed = hash_password("secret1")
    assert hashed != "secret1"
    assert verify_password("secret1", hashed)
    assert not verify_password("secret2", hashed)


def test_verify_without_hash():
    # Desk-created students have no password yet
    assert not verify_password("anything", None)
    assert not verify_password("anything", "")


def test_token_round_trip():
    claims = decode_access_token(create_access_token(42))
    assert claims["sub"] == "42"
    assert claims["role"] == ROLE_STUDENT

    claims = decode_access_token(create_access_token(ADMIN_SUBJECT, role=ROLE_ADMIN))
    assert claims["sub"] == ADMIN_SUBJECT
    assert claims["role"] == ROLE_ADMIN


def test_expired_token():
    token = create_access_token(1, expires_minutes=-1)
    with pytest.raises(AuthenticationError, match="Token expired"):
        decode_access_token(token)


def test_token_signed_with_other_key():
    forged = jwt.encode({"sub": "1", "role": ROLE_ADMIN}, "some-other-key", algorithm=settings.jwt_algorithm)
    with pytest.raises(AuthenticationError) as excinfo:
        decode_access_token(forged)
    assert excinfo.value.message == "Invalid token"
    assert excinfo.value.status_code == 401


def test_garbage_token():
    with pytest.raises(AuthenticationError, match="Invalid token"):
        decode_access_token("not.a.token")


def test_admin_credentials():
    assert check_admin_credentials(settings.admin_username, settings.admin_password)
    assert not check_admin_credentials(settings.admin_username, settings.admin_password + "x")
    assert not check_admin_credentials("someone", settings.admin_password)
    assert not check_admin_credentials(None, None)
