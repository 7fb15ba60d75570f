"""
Credential vault — authenticated encryption for source platform tokens.

Tokens are sealed with AES-256-GCM. The stored form is

    base64( version byte | 12-byte nonce | ciphertext + 16-byte tag )

so every ciphertext is self-describing and a later key/format rotation can
branch on the version byte. Decryption of anything tampered, truncated or
sealed with another key raises InvalidCredentialError, which the pipeline
treats as "reconnect required".

Usage:
    from migration_hub.utils.credential_vault import get_vault

    vault = get_vault()
    sealed = vault.encrypt(access_token)
    access_token = vault.decrypt(sealed)
Version: 1.0.0
"""
import base64
import binascii
import logging
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from migration_hub.core.config import settings
from migration_hub.core.exceptions import InvalidCredentialError

logger = logging.getLogger("credential_vault")

FORMAT_VERSION = 1
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
MASK = "••••••••"


def generate_key() -> str:
    """Generate a new base64 encoded 256-bit key for CREDENTIALS_ENCRYPTION_KEY."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def mask_secret(secret: str | None) -> str:
    """Mask a secret for display, keeping the last 4 characters."""
    if not secret:
        return ""
    if len(secret) <= 4:
        return MASK
    return f"{MASK}{secret[-4:]}"


class CredentialVault:
    """Encrypts and decrypts credentials with a single AES-256-GCM key."""

    def __init__(self, key: str | bytes) -> None:
        if isinstance(key, str):
            try:
                key = base64.b64decode(key, validate=True)
            except binascii.Error as exc:
                raise ValueError("CREDENTIALS_ENCRYPTION_KEY must be base64 encoded") from exc
        if len(key) != KEY_SIZE:
            raise ValueError(
                f"CREDENTIALS_ENCRYPTION_KEY must decode to {KEY_SIZE} bytes (got {len(key)})"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        """Seal a plaintext credential."""
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(bytes([FORMAT_VERSION]) + nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """Open a sealed credential or raise InvalidCredentialError."""
        if not ciphertext:
            raise InvalidCredentialError("No stored credential")
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidCredentialError("Stored credential is not valid base64") from exc

        if len(raw) < 1 + NONCE_SIZE + TAG_SIZE:
            raise InvalidCredentialError("Stored credential is truncated")
        if raw[0] != FORMAT_VERSION:
            raise InvalidCredentialError(f"Unknown credential format version {raw[0]}")

        nonce = raw[1:1 + NONCE_SIZE]
        sealed = raw[1 + NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            logger.warning("credential decrypt failed: authentication tag mismatch")
            raise InvalidCredentialError("Stored credential failed authentication") from exc
        return plaintext.decode("utf-8")


@lru_cache(maxsize=1)
def get_vault() -> CredentialVault:
    """Vault built from CREDENTIALS_ENCRYPTION_KEY."""
    if not settings.credentials_encryption_key:
        raise RuntimeError("CREDENTIALS_ENCRYPTION_KEY must be set to store platform credentials")
    return CredentialVault(settings.credentials_encryption_key)
