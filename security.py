"""
security.py — Session-token decoding, field encryption, and secret masking.

The Ethos session token is issued by Privy; we have no public key for it, so
claims are read without signature verification and the issuer is trusted.
"""

import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt

from config import settings

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Session Token Claims
# ─────────────────────────────────────────────

def decode_session_token(token: str) -> dict[str, Any] | None:
    """Return the unverified claims of a JWT, or None if it cannot be decoded.

    A token without a numeric `exp` claim is treated as undecodable.
    """
    if not token:
        return None
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as exc:
        logger.warning("Failed to decode session token: %s", exc)
        return None

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or isinstance(exp, bool):
        logger.warning("Session token has no usable exp claim")
        return None
    return claims


# ─────────────────────────────────────────────
# Field Encryption (Fernet)
# ─────────────────────────────────────────────

def _get_fernet(key: str) -> Fernet:
    """Instantiate a Fernet cipher from a base64-encoded key string."""
    if not key:
        raise ValueError("Encryption key is not configured in .env")
    return Fernet(key.encode())


def encryption_configured() -> bool:
    return bool(settings.field_encryption_key)


def encrypt_field(value: str) -> str:
    """Encrypt a single string field (e.g. the persisted session token)."""
    f = _get_fernet(settings.field_encryption_key)
    return f.encrypt(value.encode()).decode()


def decrypt_field(encrypted_value: str) -> str:
    """Decrypt a single encrypted field.

    Raises:
        InvalidToken: if the ciphertext has been tampered with or the key changed.
    """
    f = _get_fernet(settings.field_encryption_key)
    try:
        return f.decrypt(encrypted_value.encode()).decode()
    except InvalidToken as exc:
        logger.error("Failed to decrypt stored field — key changed or data tampered")
        raise exc


# ─────────────────────────────────────────────
# Display Helpers
# ─────────────────────────────────────────────

def mask_secret(value: str | None, show: int = 4) -> str:
    """Mask a secret for display, keeping `show` characters at each end."""
    if not value:
        return ""
    if len(value) <= show * 2:
        return "****"
    return f"{value[:show]}****{value[-show:]}"
