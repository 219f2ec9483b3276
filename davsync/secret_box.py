from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from davsync.errors import AuthError
from davsync.models import EncryptedSecret


KEY_ENV_VAR = "DAVSYNC_ENCRYPTION_KEY"
NONCE_BYTES = 12
TAG_BYTES = 16


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


def _derive_key(key: str) -> bytes:
    return hashlib.sha256(key.encode("utf-8")).digest()


class SecretBox:
    """AES-256-GCM box for provider credentials.

    Ciphertext, nonce and authentication tag are kept as separate base64
    strings so they can be stored in separate columns.
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise ValueError("encryption key is not configured")
        self._aesgcm = AESGCM(_derive_key(key))

    @classmethod
    def from_config(cls, configured_key: str) -> "SecretBox":
        return cls(os.getenv(KEY_ENV_VAR, "").strip() or configured_key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedSecret(
            ciphertext=_b64encode(sealed[:-TAG_BYTES]),
            iv=_b64encode(nonce),
            tag=_b64encode(sealed[-TAG_BYTES:]),
        )

    def decrypt(self, ciphertext: str, iv: str, tag: str) -> str:
        try:
            sealed = _b64decode(ciphertext) + _b64decode(tag)
            plaintext = self._aesgcm.decrypt(_b64decode(iv), sealed, None)
        except (InvalidTag, ValueError) as exc:
            # An undecryptable credential is as unusable as a revoked one.
            raise AuthError("stored credential cannot be decrypted") from exc
        return plaintext.decode("utf-8")

    def open(self, secret: EncryptedSecret) -> str:
        return self.decrypt(secret.ciphertext, secret.iv, secret.tag)
