import pytest

from utils.validators import EmailValidator, PasswordValidator, TextValidator


@pytest.mark.parametrize("email", ["a@b.com", "first.last@college.edu", "x-y@mail.co.in"])
def test_valid_emails(email):
    assert EmailValidator.is_valid_email(email)


@pytest.mark.parametrize("email", ["", None, "no-at-sign", "a@b", "a@b.toolong", "@college.edu"])
def test_invalid_emails(email):
    assert not EmailValidator.is_valid_email(email)


def test_normalize_email():
    assert EmailValidator.normalize_email("  Ann@College.EDU ") == "ann@college.edu"
    assert EmailValidator.normalize_email(None) == ""


def test_password_length():
    assert PasswordValidator.is_valid_password("123456")
    assert not PasswordValidator.is_valid_password("12345")
    assert not PasswordValidator.is_valid_password(None)
    assert PasswordValidator.is_valid_password("1234", min_length=4)


def test_text_checks():
    assert TextValidator.is_blank("   ")
    assert TextValidator.is_blank(None)
    assert not TextValidator.is_blank("x")

    assert TextValidator.validate_title("Heat Transfer 2")
    assert TextValidator.validate_title("1984")
    assert not TextValidator.validate_title("  ")
    assert TextValidator.validate_author("Cengel")
    assert not TextValidator.validate_author("12345")


def test_first_missing():
    assert TextValidator.first_missing(name="Ann", email="a@b.com") is None
    assert TextValidator.first_missing(name="Ann", email=" ", phone=None) == "email"
