"""AES-256-GCM encryption for refresh tokens at rest.

Ciphertexts are stored as ``ivHex:authTagHex:cipherHex`` so that records written
by other services using the same key remain readable.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from spotify_remote_playback.errors import TokenDecryptionError

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16


class TokenCipher:
    """Encrypts and decrypts refresh tokens with a 256-bit key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: str) -> "TokenCipher":
        """Build a cipher from a 64 character hex key, optionally prefixed with ``0x``."""
        key_hex = key_hex.strip()
        if key_hex.lower().startswith("0x"):
            key_hex = key_hex[2:]
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ValueError("Encryption key must be hex encoded") from e
        return cls(key)

    def encrypt(self, plain: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plain.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        cipher, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{cipher.hex()}"

    def decrypt(self, payload: str) -> str:
        """Decrypt a ``ivHex:authTagHex:cipherHex`` payload.

        Raises:
            TokenDecryptionError: If the payload is malformed or fails authentication.
        """
        parts = payload.split(":")
        if len(parts) != 3:  # noqa: PLR2004
            raise TokenDecryptionError("Invalid encrypted data format")
        try:
            iv, tag, cipher = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise TokenDecryptionError("Invalid encrypted data encoding") from e
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise TokenDecryptionError("Invalid encrypted data format")
        try:
            plain = self._aesgcm.decrypt(iv, cipher + tag, None)
        except InvalidTag as e:
            raise TokenDecryptionError("Encrypted data failed authentication") from e
        return plain.decode("utf-8")
