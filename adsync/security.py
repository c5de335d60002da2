"""Symmetric encryption for OAuth tokens at rest.

WHAT:
    AES-256-GCM wrapper used by the credential vault. The key is derived once
    per process from TOKEN_ENCRYPTION_KEY with scrypt and a fixed,
    non-secret domain-separation salt.

WHY:
    - Keeps provider refresh/access tokens out of plaintext storage and logs
    - GCM authenticates the ciphertext, so a tampered row fails to decrypt
      instead of yielding a garbage token

FORMAT:
    base64( IV (16 bytes) || auth tag (16 bytes) || ciphertext )

REFERENCES:
    - adsync/services/token_service.py (only caller)
    - https://cryptography.io/en/latest/hazmat/primitives/aead/
"""

import base64
import binascii
import logging
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from adsync.config import get_settings
from adsync.utils.env import require_env

logger = logging.getLogger(__name__)

KDF_SALT = b"ads-analytics-salt"
KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16


@lru_cache(maxsize=4)
def derive_key(secret: str) -> bytes:
    """Derive the 32-byte AES key from the configured secret (scrypt, N=2^14, r=8, p=1)."""
    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def _get_cipher() -> AESGCM:
    secret = get_settings().TOKEN_ENCRYPTION_KEY or require_env(
        "TOKEN_ENCRYPTION_KEY",
        hint="Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(32))\"",
    )
    return AESGCM(derive_key(secret))


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a provider secret before persisting.

    Args:
        plaintext: Raw secret to encrypt (access or refresh token).
        context:   Friendly label for logs (provider/connection).

    Returns:
        Base64 payload suitable for a Text column.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    iv = os.urandom(IV_LENGTH)
    sealed = _get_cipher().encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag; stored layout puts it right after the IV
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    payload = base64.b64encode(iv + tag + ciphertext).decode("ascii")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return payload


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored provider secret.

    Raises:
        ValueError: If the stored value is malformed or fails authentication.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        logger.error("[TOKEN_DECRYPT] Malformed ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc

    if len(raw) <= IV_LENGTH + TAG_LENGTH:
        logger.error("[TOKEN_DECRYPT] Truncated ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.")

    iv = raw[:IV_LENGTH]
    tag = raw[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
    body = raw[IV_LENGTH + TAG_LENGTH:]
    try:
        plaintext = _get_cipher().decrypt(iv, body + tag, None).decode("utf-8")
    except InvalidTag as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc

    logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
    return plaintext
