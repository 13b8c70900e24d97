from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatehouse.logging import get_logger

logger = get_logger(__name__)

# 25 random bytes encode to exactly 40 base32 characters, no padding
TOKEN_BYTES = 25


def generate_token() -> str:
    """Opaque bearer token: 200 bits of entropy in lower-case base32."""
    return base64.b32encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii").lower()


def hash_token(token: str) -> str:
    """Deterministic SHA-256 hex digest used to store and look up tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(token: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_token(token), expected_hash)


class TokenCodec:
    """Password hashing plus the opaque-token primitives.

    Argon2id cost parameters are fixed at construction and come from process
    settings; changing them only affects hashes created afterwards.
    """

    def __init__(
        self,
        *,
        memory_cost: int = 19456,
        time_cost: int = 2,
        hash_len: int = 32,
        parallelism: int = 1,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            type=Type.ID,
        )

    generate_token = staticmethod(generate_token)
    hash_token = staticmethod(hash_token)

    def hash_password(self, candidate: str) -> str:
        return self._pwd_hasher.hash(candidate)

    def verify_password(self, stored_hash: str | None, candidate: str) -> bool:
        """Constant-time argon2 verification; any malformed input yields False."""
        if not stored_hash or candidate is None:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, candidate)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
