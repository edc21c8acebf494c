""" Integrity digests for ciphertext blobs. """

import hashlib
from pathlib import Path


CHUNK_SIZE = 65536  # 64KB

def calculate_sha256(file_path: Path) -> str:

    # Calculates the SHA-256 hash of a file without loading it whole.

    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        while True:
            data = f.read(CHUNK_SIZE)
            if not data:
                break
            sha256.update(data)
    return sha256.hexdigest()


def calculate_sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_bytes(data: bytes) -> str:
    """Lowercase hex SHA-256 of ``data`` (64 characters)."""
    return calculate_sha256_bytes(data)


def _normalize_hex(value: str) -> str:
    value = value.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def verify_hash(data: bytes, expected_hex: str) -> bool:
    """Return True when the SHA-256 of ``data`` equals ``expected_hex``.

    The digest covers public ciphertext, not a secret, so a plain comparison is
    used here rather than a constant-time one.
    """
    return calculate_sha256_bytes(data) == _normalize_hex(expected_hex)


def verify_file_hash(file_path: Path, expected_hex: str) -> bool:
    return calculate_sha256(file_path) == _normalize_hex(expected_hex)
