"""Client-side cryptographic core for TimeVault.

This package provides:
- AES-256-GCM blob encryption, single shot or chunked for large media
- key wrapping of per-message keys for a recipient address or a passphrase
- best-effort erasure of key and plaintext buffers

Everything here is a plain function taking key material explicitly; nothing
holds keys between calls.
"""

from timevault.core.hashing import hash_bytes, verify_hash
from timevault.core.erase import secure_erase, erasing
from .kdf import generate_salt, derive_passphrase_key
from .symmetric import (
    generate_key,
    import_key,
    export_key,
    encrypt_standard,
    decrypt_standard,
    encrypt_chunked,
    decrypt_chunked,
    encrypt_smart,
    decrypt_smart,
    encrypt_file,
    decrypt_file,
    detect_format,
    detect_file_format,
    derive_chunk_iv,
    should_use_chunked,
    get_metadata,
)
from .keywrap import (
    derive_address_key,
    validate_address,
    is_valid_address,
    wrap,
    unwrap,
    wrap_with_passphrase,
    unwrap_with_passphrase,
)

__all__ = [
    "hash_bytes",
    "verify_hash",
    "secure_erase",
    "erasing",
    "generate_salt",
    "derive_passphrase_key",
    "generate_key",
    "import_key",
    "export_key",
    "encrypt_standard",
    "decrypt_standard",
    "encrypt_chunked",
    "decrypt_chunked",
    "encrypt_smart",
    "decrypt_smart",
    "encrypt_file",
    "decrypt_file",
    "detect_format",
    "detect_file_format",
    "derive_chunk_iv",
    "should_use_chunked",
    "get_metadata",
    "derive_address_key",
    "validate_address",
    "is_valid_address",
    "wrap",
    "unwrap",
    "wrap_with_passphrase",
    "unwrap_with_passphrase",
]
