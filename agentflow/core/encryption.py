"""Fernet key ring for provider keys and tool tokens stored at rest.

``FERNET_KEY`` holds one or more comma-separated keys. The first key encrypts;
every key is tried on decrypt, so a new key can be prepended, existing rows
re-encrypted with ``rotate_value`` and the old key dropped afterwards.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from agentflow.core.config import settings

logger = logging.getLogger(__name__)

_keyring: MultiFernet | None = None


def parse_keys(raw: str) -> list[Fernet]:
    """Build Fernet instances from a comma-separated key list.

    Raises:
        ValueError: no key configured, or a key is not valid urlsafe base64 of 32 bytes.
    """
    keys = [part.strip() for part in (raw or "").split(",") if part.strip()]
    if not keys:
        raise ValueError("FERNET_KEY is not configured: cannot encrypt/decrypt provider keys")
    fernets = []
    for position, key in enumerate(keys, start=1):
        try:
            fernets.append(Fernet(key.encode()))
        except ValueError as e:
            raise ValueError(f"FERNET_KEY entry {position} is not a valid Fernet key") from e
    return fernets


def _get_keyring() -> MultiFernet:
    global _keyring
    if _keyring is None:
        _keyring = MultiFernet(parse_keys(settings.fernet_key))
    return _keyring


def reset_fernet() -> None:
    """Forget the cached key ring so a changed ``settings.fernet_key`` takes effect."""
    global _keyring
    _keyring = None


def encrypt_value(plaintext: str) -> bytes:
    """Encrypt with the primary key. Returns bytes suitable for a BYTEA column."""
    return _get_keyring().encrypt(plaintext.encode("utf-8"))


def decrypt_value(ciphertext: bytes) -> str:
    """Decrypt with any configured key. Returns empty string on failure."""
    if not ciphertext:
        return ""
    try:
        return _get_keyring().decrypt(ciphertext).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt stored secret: no configured key matches or data is corrupted")
        return ""


def rotate_value(ciphertext: bytes) -> bytes | None:
    """Re-encrypt ``ciphertext`` under the primary key.

    Returns None when no configured key can read it, leaving the caller to
    decide whether to keep or drop the row.
    """
    try:
        return _get_keyring().rotate(ciphertext)
    except InvalidToken:
        return None
