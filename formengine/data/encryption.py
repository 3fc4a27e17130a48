from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from formengine.data.codec import CodecError


class SnapshotEncryption:
    """Symmetric encryption of stored snapshot blobs (Fernet, key derived from a secret)."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("An encryption secret is required")
        # Fernet needs a urlsafe base64-encoded 32-byte key.
        key = hashlib.sha256(secret.encode("utf-8")).digest()
        self.cipher = Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, blob: bytes) -> bytes:
        return self.cipher.encrypt(blob)

    def decrypt(self, blob: bytes) -> bytes:
        try:
            return self.cipher.decrypt(blob)
        except InvalidToken as e:
            raise CodecError("Snapshot payload cannot be decrypted with this key") from e
