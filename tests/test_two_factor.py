import re
from datetime import timedelta

import pyotp
import pytest

from gatehouse.service.errors import ConflictError, ValidationError
from gatehouse.service.two_factor import (
    DEFAULT_TOTP_WINDOW,
    build_challenge_uri,
    generate_backup_codes,
    generate_secret,
    normalize_backup_code,
    verify_code,
)

PASSWORD = "Password123"


def _code(secret, when):
    return pyotp.TOTP(secret).at(when)


def test_secret_and_uri_shape():
    secret = generate_secret()
    assert re.fullmatch(r"[A-Z2-7]{32}", secret)
    uri = build_challenge_uri(secret, "alice@example.com", "Gatehouse")
    assert uri.startswith("otpauth://totp/Gatehouse:")
    assert "alice%40example.com" in uri
    assert f"secret={secret}" in uri
    assert "issuer=Gatehouse" in uri


def test_verify_code_accepts_drift_and_rejects_malformed(clock):
    secret = generate_secret()
    now = clock.now
    assert verify_code(_code(secret, now), secret, for_time=now)
    assert verify_code(_code(secret, now - timedelta(seconds=30)), secret, for_time=now)
    assert not verify_code(_code(secret, now - timedelta(seconds=90)), secret, 1, for_time=now)
    assert verify_code(_code(secret, now - timedelta(seconds=60)), secret, 2, for_time=now)
    spaced = _code(secret, now)
    assert verify_code(f"{spaced[:3]} {spaced[3:]}", secret, for_time=now)
    assert not verify_code("12345", secret, for_time=now)
    assert not verify_code("abcdef", secret, for_time=now)
    assert not verify_code("", secret, for_time=now)
    assert not verify_code("123456", None, for_time=now)


def test_default_window_allows_two_steps_of_drift(clock):
    secret = generate_secret()
    now = clock.now
    assert DEFAULT_TOTP_WINDOW == 2
    assert verify_code(_code(secret, now - timedelta(seconds=60)), secret, for_time=now)
    assert verify_code(_code(secret, now + timedelta(seconds=60)), secret, for_time=now)
    assert not verify_code(_code(secret, now - timedelta(seconds=90)), secret, for_time=now)


def test_backup_codes_format_and_normalization():
    codes = generate_backup_codes(10)
    assert len(set(codes)) == 10
    for code in codes:
        assert re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}", code)
    assert normalize_backup_code("ab12-cd34 ef56") == "AB12CD34EF56"


async def test_setup_confirm_and_disable(services, clock):
    user = services.create_user(password=PASSWORD)
    engine = services.two_factor

    with pytest.raises(ValidationError):
        await engine.begin_setup(user.id, "wrong-password")

    setup = await engine.begin_setup(user.id, PASSWORD)
    assert setup.qr_code.startswith("data:image/png;base64,")
    status = await engine.status(user.id)
    assert status == {"enabled": False, "pending_setup": True, "backup_codes_remaining": 0}

    with pytest.raises(ValidationError):
        await engine.confirm_setup(user.id, "000000")

    # Setup tolerates two steps of drift
    codes = await engine.confirm_setup(user.id, _code(setup.secret, clock.now - timedelta(seconds=60)))
    assert len(codes) == 10
    stored = services.store.get_user(user.id)
    assert stored.two_factor_enabled
    assert all(c.startswith("$argon2id$") for c in stored.two_factor_backup_codes)
    assert ("two_factor", user.email, True) in services.email.sent

    with pytest.raises(ConflictError):
        await engine.begin_setup(user.id, PASSWORD)

    await engine.disable(user.id, PASSWORD)
    stored = services.store.get_user(user.id)
    assert not stored.two_factor_enabled
    assert stored.two_factor_secret is None
    assert stored.two_factor_backup_codes == []


async def test_confirm_without_setup_fails(services):
    user = services.create_user(password=PASSWORD)
    with pytest.raises(ValidationError):
        await services.two_factor.confirm_setup(user.id, "123456")


async def test_backup_codes_are_single_use(services, clock):
    user = services.create_user(password=PASSWORD)
    setup = await services.two_factor.begin_setup(user.id, PASSWORD)
    codes = await services.two_factor.confirm_setup(user.id, _code(setup.secret, clock.now))

    assert await services.two_factor.consume_backup_code(user.id, codes[0].lower()) == 9
    assert await services.two_factor.consume_backup_code(user.id, codes[0]) is None
    assert await services.two_factor.consume_backup_code(user.id, "nope") is None


async def test_regenerate_replaces_codes(services, clock):
    user = services.create_user(password=PASSWORD)
    setup = await services.two_factor.begin_setup(user.id, PASSWORD)
    old = await services.two_factor.confirm_setup(user.id, _code(setup.secret, clock.now))
    new = await services.two_factor.regenerate_backup_codes(user.id, PASSWORD)
    assert len(new) == 10
    assert await services.two_factor.consume_backup_code(user.id, old[0]) is None
    assert await services.two_factor.consume_backup_code(user.id, new[0]) == 9


async def test_pending_challenge_store(services, clock):
    pending = services.pending
    token, expires_at = await pending.issue("user-1", timedelta(minutes=5))
    assert expires_at == clock.now + timedelta(minutes=5)
    assert (await pending.peek(token)).user_id == "user-1"
    assert (await pending.consume(token)).user_id == "user-1"
    assert await pending.consume(token) is None

    token, _ = await pending.issue("user-1", timedelta(minutes=5))
    clock.advance(minutes=5)
    assert await pending.peek(token) is None
    assert await pending.peek(None) is None
