"""
NIMEX Marketplace — Vendor Bank Detail Encryption
Payout account numbers are stored as Fernet tokens (cryptography) and only
ever leave the service masked to their last four digits.
"""
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from nimex.config import get_settings

logger = logging.getLogger("nimex.encryption")


@lru_cache()
def _cipher() -> Fernet:
    key = get_settings().FERNET_KEY
    if not key:
        raise RuntimeError("FERNET_KEY is not configured; vendor bank details cannot be stored.")
    return Fernet(key.encode("utf-8"))


def encrypt_pii(plaintext: str) -> str:
    """Fernet token (URL-safe base64 text) for a PII value; empty stays empty."""
    if not plaintext:
        return plaintext
    return _cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_pii(ciphertext: str) -> str:
    """
    Plaintext for a stored Fernet token.

    Raises ValueError when the token was tampered with or the key rotated.
    """
    if not ciphertext:
        return ciphertext
    try:
        return _cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.error("Stored PII failed to decrypt; wrong FERNET_KEY or corrupted value")
        raise ValueError("Stored value could not be decrypted")


def mask_account_number(ciphertext: str) -> str:
    """Decrypt a stored account number and keep only its last four digits."""
    plain = decrypt_pii(ciphertext)
    if not plain:
        return plain
    return "*" * max(len(plain) - 4, 0) + plain[-4:]
