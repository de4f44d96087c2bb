"""AES-256-GCM encryption of per-channel secrets.

Stored format: ``iv.tag.ciphertext``, each part base64, 12-byte IV.
"""

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings

_IV_BYTES = 12
_TAG_BYTES = 16


class SecretsError(Exception):
    """Secret key missing/invalid or payload cannot be decrypted."""


def _get_key(secrets_key: Optional[str]) -> bytes:
    secret = secrets_key if secrets_key is not None else settings.leados_secrets_key
    if not secret:
        raise SecretsError("Missing LEADOS_SECRETS_KEY")
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError) as e:
        raise SecretsError("LEADOS_SECRETS_KEY is not valid base64") from e
    if len(key) != 32:
        raise SecretsError("LEADOS_SECRETS_KEY must be base64 for 32 raw bytes")
    return key


def encrypt_secret(plain_text: str, secrets_key: Optional[str] = None) -> str:
    key = _get_key(secrets_key)
    iv = os.urandom(_IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plain_text.encode("utf-8"), None)
    ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
    return ".".join(base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext))


def decrypt_secret(payload: str, secrets_key: Optional[str] = None) -> str:
    parts = (payload or "").split(".")
    if len(parts) != 3 or not all(parts):
        raise SecretsError("Invalid encrypted payload format")

    key = _get_key(secrets_key)
    try:
        iv, tag, ciphertext = (base64.b64decode(part) for part in parts)
        plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except (binascii.Error, ValueError, InvalidTag) as e:
        raise SecretsError("Encrypted payload could not be decrypted") from e
    return plain.decode("utf-8")
