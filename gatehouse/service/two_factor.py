from __future__ import annotations

import base64
import binascii
import hashlib
import io
import re
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pyotp
import qrcode
from qrcode.constants import ERROR_CORRECT_M

from gatehouse.logging import get_logger
from gatehouse.service.activity import ActivityCategory, ActivityLogService, Actions
from gatehouse.service.email import EmailService, send_notification_safely
from gatehouse.service.errors import ConflictError, NotFoundError, ValidationError
from gatehouse.service.runtime_config import RuntimeConfig
from gatehouse.service.tokens import TokenCodec, generate_token, hash_token
from gatehouse.storage.models import User, utcnow
from gatehouse.storage.protocol import AuthStore

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_INTERVAL = 30
# 32 base32 characters carry 160 bits
SECRET_LENGTH = 32

# Clock-drift allowance in 30 s steps either side of now
DEFAULT_TOTP_WINDOW = 2

_CODE_SEPARATORS = re.compile(r"[\s-]")
_SIX_DIGITS = re.compile(r"^\d{6}$")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def generate_secret() -> str:
    return pyotp.random_base32(length=SECRET_LENGTH)


def _totp(secret: str, issuer: Optional[str] = None) -> pyotp.TOTP:
    return pyotp.TOTP(
        secret,
        digits=TOTP_DIGITS,
        interval=TOTP_INTERVAL,
        digest=hashlib.sha1,
        issuer=issuer,
    )


def build_challenge_uri(secret: str, account_label: str, issuer: str) -> str:
    """``otpauth://totp/...`` URI with SHA1, 6 digits and a 30 s period."""
    return _totp(secret, issuer).provisioning_uri(name=account_label, issuer_name=issuer)


def build_qr_code(uri: str) -> str:
    """Render ``uri`` as a PNG data URL for the setup page."""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=10, border=2)
    qr.add_data(uri)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def verify_code(
    code: Optional[str],
    secret: Optional[str],
    window: int = DEFAULT_TOTP_WINDOW,
    *,
    for_time: Optional[datetime] = None,
) -> bool:
    """Check a TOTP code allowing ``window`` steps of drift either side.

    Anything that is not six digits after removing spaces and dashes is
    rejected before any HMAC is computed.
    """
    if not code or not secret:
        return False
    cleaned = _CODE_SEPARATORS.sub("", code)
    if not _SIX_DIGITS.match(cleaned):
        return False
    try:
        return _totp(secret).verify(cleaned, for_time=for_time or utcnow(), valid_window=window)
    except (binascii.Error, ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return False


def normalize_backup_code(code: str) -> str:
    return _NON_ALNUM.sub("", code or "").upper()


def generate_backup_codes(count: int) -> List[str]:
    """``count`` codes of 12 upper-case hex characters shown as XXXX-XXXX-XXXX."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(6).upper()
        codes.append("-".join(raw[i : i + 4] for i in range(0, 12, 4)))
    return codes


def hash_backup_codes(codes: Sequence[str], codec: TokenCodec) -> List[str]:
    return [codec.hash_password(normalize_backup_code(code)) for code in codes]


def verify_backup_code(code: str, hashes: Sequence[str], codec: TokenCodec) -> int:
    """Index of the stored hash matching ``code``, or -1."""
    normalized = normalize_backup_code(code)
    if not normalized:
        return -1
    for index, stored in enumerate(hashes):
        if codec.verify_password(stored, normalized):
            return index
    return -1


@dataclass
class TwoFactorSetup:
    secret: str
    uri: str
    qr_code: str


@dataclass
class PendingChallenge:
    user_id: str
    expires_at: datetime


class PendingChallengeStore:
    """Short-lived markers for users who passed the password step.

    The marker token goes to the client in an httpOnly cookie; only its hash
    is kept, in Redis when available and in process memory otherwise.
    """

    def __init__(self, cache=None, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.cache = cache
        self._clock = clock or utcnow
        self._local: Dict[str, Tuple[str, datetime]] = {}
        self._local_lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    async def issue(self, user_id: str, ttl: timedelta) -> Tuple[str, datetime]:
        token = generate_token()
        key = hash_token(token)
        expires_at = self._now() + ttl
        if self.cache:
            await self.cache.set_pending_challenge(key, user_id, expires_at)
        else:
            with self._local_lock:
                self._purge_expired()
                self._local[key] = (user_id, expires_at)
        return token, expires_at

    async def peek(self, token: Optional[str]) -> Optional[PendingChallenge]:
        if not token:
            return None
        key = hash_token(token)
        if self.cache:
            data = await self.cache.get_pending_challenge(key)
            return self._from_cache(data)
        with self._local_lock:
            entry = self._local.get(key)
            if not entry:
                return None
            if entry[1] <= self._now():
                del self._local[key]
                return None
            return PendingChallenge(user_id=entry[0], expires_at=entry[1])

    async def consume(self, token: Optional[str]) -> Optional[PendingChallenge]:
        """Remove the marker; only one concurrent caller gets it back."""
        if not token:
            return None
        key = hash_token(token)
        if self.cache:
            return self._from_cache(await self.cache.pop_pending_challenge(key))
        with self._local_lock:
            entry = self._local.pop(key, None)
        if not entry or entry[1] <= self._now():
            return None
        return PendingChallenge(user_id=entry[0], expires_at=entry[1])

    def _from_cache(self, data) -> Optional[PendingChallenge]:
        if not data:
            return None
        try:
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (KeyError, TypeError, ValueError):
            return None
        if expires_at <= self._now():
            return None
        return PendingChallenge(user_id=data["user_id"], expires_at=expires_at)

    def _purge_expired(self) -> None:
        now = self._now()
        for key in [k for k, (_, exp) in self._local.items() if exp <= now]:
            del self._local[key]


class TwoFactorEngine:
    """Disabled -> pending setup -> enabled, plus backup-code bookkeeping."""

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        config: RuntimeConfig,
        activity: ActivityLogService,
        *,
        issuer: str = "Gatehouse",
        email: Optional[EmailService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.config = config
        self.activity = activity
        self.issuer = issuer
        self.email = email
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def verify_code(self, code: Optional[str], secret: Optional[str], window: int = DEFAULT_TOTP_WINDOW) -> bool:
        return verify_code(code, secret, window, for_time=self._now())

    def verify_backup_code(self, code: str, hashes: Sequence[str]) -> int:
        return verify_backup_code(code, hashes, self.codec)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        return user

    def _require_password(self, user: User, password: str) -> None:
        if not self.codec.verify_password(user.password_hash, password or ""):
            raise ValidationError("Incorrect password", detail={"field": "password"})

    async def _issue_backup_codes(self, user_id: str) -> List[str]:
        count = await self.config.get_int("security.2fa.backup_codes_count")
        codes = generate_backup_codes(count)
        self.store.update_user(user_id, two_factor_backup_codes=hash_backup_codes(codes, self.codec))
        return codes

    async def status(self, user_id: str) -> dict:
        user = self._require_user(user_id)
        return {
            "enabled": user.two_factor_enabled,
            "pending_setup": bool(user.two_factor_secret) and not user.two_factor_enabled,
            "backup_codes_remaining": len(user.two_factor_backup_codes),
        }

    async def begin_setup(
        self, user_id: str, password: str, *, ip_address: Optional[str] = None
    ) -> TwoFactorSetup:
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        self._require_password(user, password)
        secret = generate_secret()
        # Stored before confirmation so a rescan can retry; not enforced until enabled
        self.store.update_user(user_id, two_factor_secret=secret, two_factor_enabled=False)
        uri = build_challenge_uri(secret, user.email, self.issuer)
        await self.activity.log_success(
            Actions.TWO_FACTOR_SETUP_START,
            ActivityCategory.USER,
            user_id=user_id,
            ip_address=ip_address,
        )
        return TwoFactorSetup(secret=secret, uri=uri, qr_code=build_qr_code(uri))

    async def confirm_setup(
        self,
        user_id: str,
        code: str,
        *,
        window: int = DEFAULT_TOTP_WINDOW,
        ip_address: Optional[str] = None,
    ) -> List[str]:
        """Enable two-factor auth and return the plaintext backup codes, shown once."""
        user = self._require_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not user.two_factor_secret:
            raise ValidationError("Start two-factor setup first")
        if not self.verify_code(code, user.two_factor_secret, window):
            await self.activity.log_failure(
                Actions.TWO_FACTOR_VERIFY_FAILED,
                ActivityCategory.USER,
                "Invalid setup code",
                user_id=user_id,
                ip_address=ip_address,
                metadata={"stage": "setup"},
            )
            raise ValidationError("Invalid verification code", detail={"field": "code"})
        codes = await self._issue_backup_codes(user_id)
        self.store.update_user(user_id, two_factor_enabled=True)
        await self.activity.log_success(
            Actions.TWO_FACTOR_ENABLE,
            ActivityCategory.USER,
            user_id=user_id,
            ip_address=ip_address,
        )
        if self.email:
            await send_notification_safely(self.email.send_two_factor_changed, user.email, enabled=True)
        return codes

    async def disable(
        self, user_id: str, password: str, *, ip_address: Optional[str] = None
    ) -> None:
        user = self._require_user(user_id)
        self._require_password(user, password)
        if not user.two_factor_enabled and not user.two_factor_secret:
            raise ValidationError("Two-factor authentication is not enabled")
        self.store.update_user(
            user_id,
            two_factor_secret=None,
            two_factor_enabled=False,
            two_factor_backup_codes=[],
        )
        await self.activity.log_success(
            Actions.TWO_FACTOR_DISABLE,
            ActivityCategory.USER,
            user_id=user_id,
            ip_address=ip_address,
        )
        if self.email and user.two_factor_enabled:
            await send_notification_safely(self.email.send_two_factor_changed, user.email, enabled=False)

    async def regenerate_backup_codes(
        self, user_id: str, password: str, *, ip_address: Optional[str] = None
    ) -> List[str]:
        user = self._require_user(user_id)
        self._require_password(user, password)
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        codes = await self._issue_backup_codes(user_id)
        await self.activity.log_success(
            Actions.TWO_FACTOR_BACKUP_REGENERATE,
            ActivityCategory.USER,
            user_id=user_id,
            ip_address=ip_address,
        )
        return codes

    async def consume_backup_code(self, user_id: str, code: str) -> Optional[int]:
        """Spend one backup code; remaining count, or None when nothing matched."""
        user = self._require_user(user_id)
        hashes = user.two_factor_backup_codes
        index = self.verify_backup_code(code, hashes)
        if index < 0:
            return None
        return self.store.remove_backup_code(user_id, hashes[index])
