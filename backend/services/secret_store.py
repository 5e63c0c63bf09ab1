"""
Secret Store

Authenticated encryption for system prompts at rest (AES-256-GCM).

Blob format is self-describing and hex encoded:

    <iv:24 hex>:<tag:32 hex>:<ciphertext hex>

Any instance holding the same 32-byte key can decrypt any record. A tag
that does not verify raises DecryptionFailure; no partial plaintext is
ever returned.
"""

import binascii
import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from exceptions import DecryptionFailure, EncryptionKeyMissing

logger = logging.getLogger(__name__)

KEY_BYTES = 32
IV_BYTES = 12
LEGACY_IV_BYTES = 16  # blobs written before the switch to 96-bit IVs
TAG_BYTES = 16


class SecretStore:
    """
    AES-256-GCM encryption with a random 96-bit IV per call.

    Usage:
        >>> store = SecretStore(bytes.fromhex("00" * 32))
        >>> blob = store.encrypt("You are a reference coach...")
        >>> store.decrypt(blob)
        'You are a reference coach...'
    """

    def __init__(self, key: bytes):
        if not key or len(key) != KEY_BYTES:
            raise EncryptionKeyMissing("Prompt encryption key must be exactly 32 bytes")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_settings(cls, raw_key: Optional[str] = None) -> "SecretStore":
        """Build from PV_PROMPT_ENCRYPTION_KEY. Raises EncryptionKeyMissing when unset."""
        import settings
        return cls(settings.require_prompt_encryption_key(raw_key))

    def encrypt(self, plaintext: str) -> str:
        if plaintext is None:
            raise ValueError("Plaintext cannot be None")

        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        try:
            iv, tag, ciphertext = self._split(blob)
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except InvalidTag:
            logger.warning("Prompt decryption failed: authentication tag mismatch")
            raise DecryptionFailure()
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Prompt decryption failed: malformed blob ({type(e).__name__})")
            raise DecryptionFailure("Decryption failed (malformed ciphertext)")

    @staticmethod
    def _split(blob: str):
        if not isinstance(blob, str):
            raise ValueError("Ciphertext must be a string")
        parts = blob.split(":")
        if len(parts) != 3:
            raise ValueError("Expected iv:tag:ciphertext")
        try:
            iv, tag, ciphertext = (binascii.unhexlify(p) for p in parts)
        except binascii.Error as e:
            raise ValueError(str(e))
        if len(iv) not in (IV_BYTES, LEGACY_IV_BYTES) or len(tag) != TAG_BYTES:
            raise ValueError("Invalid IV or tag length")
        return iv, tag, ciphertext

    @staticmethod
    def fingerprint(plaintext: str) -> str:
        """SHA-256 hex digest, used to version prompts without storing them."""
        return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()
