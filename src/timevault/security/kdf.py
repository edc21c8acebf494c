"""Key derivation for passphrase wrapping and address-bound wrapping."""

import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from timevault.core.exceptions import ValidationError

PBKDF2_ITERATIONS = 100_000
PASSPHRASE_SALT_LENGTH = 16


def generate_salt(length: int = PASSPHRASE_SALT_LENGTH) -> bytes:
    """Return a cryptographically secure random salt."""
    return os.urandom(length)


def derive_passphrase_key(
    passphrase: bytes | str,
    salt: bytes,
    iterations: int = PBKDF2_ITERATIONS,
    key_len: int = 32,
) -> bytes:
    """
    Derive an AES-256 key from a passphrase using PBKDF2-HMAC-SHA256.
    Returns raw derived key bytes.
    """
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")
    if not passphrase:
        raise ValidationError("Passphrase must not be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=key_len,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase)


def derive_wrapping_key(shared_secret: bytes, salt: bytes, info: bytes, key_len: int = 32) -> bytes:
    """HKDF-SHA256 expansion of a shared secret into an AES key."""
    hkdf = HKDF(algorithm=hashes.SHA256(), length=key_len, salt=salt, info=info)
    return hkdf.derive(shared_secret)

