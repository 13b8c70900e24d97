"""Helpers shared by the memory and Postgres stores."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper for TOTP secrets at rest.

    The Fernet key is derived from the deployment ``SECRET_KEY`` so that the
    same secret decrypts across restarts and across store backends.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Unable to initialize secret cipher without key material")
        self._fernet = Fernet(self.derive_key(key_material))

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Unreadable ciphertext must not be mistaken for a valid secret
            logger.warning("two_factor_secret_decrypt_failed")
            return None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: str) -> str:
    return username.strip().lower()


def normalize_permissions(permissions) -> list[str]:
    """Deduplicate while keeping first-seen order."""
    seen: list[str] = []
    for perm in permissions or []:
        if perm not in seen:
            seen.append(perm)
    return seen
