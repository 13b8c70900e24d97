import pytest

from gatehouse.service.validation import (
    validate_email,
    validate_login_password,
    validate_name,
    validate_password_requirements,
    validate_username,
)


@pytest.mark.parametrize(
    "username,ok",
    [
        ("alice", True),
        ("a_b-c9", True),
        ("ab", False),
        ("a" * 31, True),
        ("a" * 32, False),
        ("Alice", False),
        ("al ice", False),
        (None, False),
        (12345, False),
    ],
)
def test_validate_username(username, ok):
    assert validate_username(username) is ok


def test_validate_email():
    assert validate_email("a@b.co")
    assert not validate_email("a@b")
    assert not validate_email("a b@c.de")
    assert not validate_email("x" * 250 + "@b.com")
    assert not validate_email(None)


def test_validate_name_and_login_password():
    assert validate_name("Mary-Jane O'Neil")
    assert not validate_name("<script>")
    assert not validate_name("x" * 51)
    assert validate_login_password("secret")
    assert not validate_login_password("short")
    assert not validate_login_password("x" * 256)
    assert not validate_login_password(["list"])


async def test_password_policy_reports_first_violation(services):
    config = services.config
    assert await validate_password_requirements("Short1", config) == (
        "Password must be at least 8 characters long"
    )
    assert "uppercase" in await validate_password_requirements("lowercase123", config)
    assert "lowercase" in await validate_password_requirements("UPPERCASE123", config)
    assert "number" in await validate_password_requirements("NoNumbersHere", config)
    assert await validate_password_requirements("Password123", config) is None
    assert "255" in await validate_password_requirements("Aa1" + "x" * 260, config)


async def test_password_policy_follows_runtime_config(services):
    config = services.config
    await config.set("security.password.require_special", True)
    assert "special" in await validate_password_requirements("Password123", config)
    assert await validate_password_requirements("Password123!", config) is None

    await config.set("security.password.min_length", 12)
    assert "12 characters" in await validate_password_requirements("Password12!", config)
