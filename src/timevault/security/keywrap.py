"""Wrapping of per-message AES keys for a recipient.

Recipients are identified by an Ethereum-style address, which does not expose a
public key. The v2 scheme therefore works as follows:

1. ``addressKey = SHA-256("wrap-v2:" + address.lower())``
2. a fresh P-256 key pair is generated per wrap and its public point ``E``
   exported (uncompressed, 65 bytes)
3. ``shared = SHA-256(E || addressKey)``
4. HKDF-SHA256(shared, random 32 byte salt, fixed info) gives the wrapping key
5. the message key is sealed with AES-256-GCM under a random 12 byte nonce and
   stored as ``salt || ciphertext+tag``

Trust model, as built: ``addressKey`` is derived from the public address and
``E`` travels next to the ciphertext, so anybody who holds the wrapped key and
knows the address can recompute the wrapping key. The scheme labels a key with
its recipient; it does not make it secret to that recipient. Confidentiality
rests on the wallet's proof-of-ownership step (see
:mod:`timevault.message.unlock`) gating who is handed the wrapped key.

The passphrase path (PBKDF2-SHA256, 100k iterations) is for recipients without
a wallet, e.g. claim links.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Dict, Optional, Union

import nacl.exceptions
import nacl.secret
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from timevault.core.exceptions import (
    AuthenticationFailed,
    FormatError,
    InvalidAddress,
    PlatformUnavailable,
    RecipientMismatch,
    ValidationError,
)
from timevault.core.models import (
    AnyWrappedKey,
    BytesLike,
    LegacyWrappedKey,
    PassphraseWrappedKey,
    WrappedKey,
    parse_wrapped_key,
)
from .kdf import derive_passphrase_key, derive_wrapping_key, generate_salt
from .symmetric import IV_LENGTH, KEY_BYTES, TAG_LENGTH, random_bytes

logger = logging.getLogger(__name__)

ADDRESS_DOMAIN = "wrap-v2:"
WRAP_INFO = b"timevault-aes-key-encryption-v2"
WRAP_VERSION = "v2"
WRAP_SALT_LENGTH = 32
ADDRESS_KEY_LENGTH = 32
LEGACY_SECRET_LENGTH = 32

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


# ----------------------------------------------------------------------
# Addresses
# ----------------------------------------------------------------------


def is_valid_address(address: Any) -> bool:
    return isinstance(address, str) and bool(_ADDRESS_RE.match(address.strip()))


def validate_address(address: Any) -> str:
    """Return the trimmed address or raise :class:`InvalidAddress`."""
    if not isinstance(address, str) or not address.strip():
        raise InvalidAddress("Address is required")
    address = address.strip()
    if not _ADDRESS_RE.match(address):
        raise InvalidAddress(
            "Invalid address format (must start with 0x followed by 40 hex characters)"
        )
    return address


def derive_address_key(address: str) -> bytes:
    """Domain-separated 32 byte value for ``address``. Not a secret."""
    normalized = validate_address(address).lower()
    return hashlib.sha256((ADDRESS_DOMAIN + normalized).encode("utf-8")).digest()


# ----------------------------------------------------------------------
# Address-bound wrap (v2)
# ----------------------------------------------------------------------


def _ephemeral_public_value() -> bytes:
    # Only the public point takes part in the derivation; the private half is
    # dropped immediately.
    try:
        private_key = ec.generate_private_key(ec.SECP256R1())
    except UnsupportedAlgorithm as exc:
        raise PlatformUnavailable("P-256 key agreement is not supported by the crypto backend") from exc
    return private_key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )


def _wrapping_key(ephemeral_public: bytes, address_key: bytes, salt: bytes) -> bytes:
    shared = hashlib.sha256(ephemeral_public + address_key).digest()
    return derive_wrapping_key(shared, salt, WRAP_INFO)


def _check_key_bytes(key_bytes: BytesLike) -> None:
    if len(key_bytes) != KEY_BYTES:
        raise ValidationError(f"Message key must be {KEY_BYTES} bytes, got {len(key_bytes)}")


def wrap(key_bytes: BytesLike, recipient_address: str) -> WrappedKey:
    """Wrap ``key_bytes`` for ``recipient_address`` (scheme v2)."""
    _check_key_bytes(key_bytes)
    address_key = derive_address_key(recipient_address)
    ephemeral_public = _ephemeral_public_value()
    salt = random_bytes(WRAP_SALT_LENGTH)
    nonce = random_bytes(IV_LENGTH)

    aead = AESGCM(_wrapping_key(ephemeral_public, address_key, salt))
    sealed = aead.encrypt(nonce, key_bytes, None)
    logger.debug("Wrapped message key for %s", recipient_address)
    return WrappedKey(
        encrypted_aes_key=salt + sealed,
        nonce=nonce,
        recipient_public_key=address_key,
        ephemeral_public_key=ephemeral_public,
        version=WRAP_VERSION,
    )


def _unwrap_v2(wrapped: WrappedKey) -> bytearray:
    if len(wrapped.encrypted_aes_key) < WRAP_SALT_LENGTH + TAG_LENGTH:
        raise FormatError("Wrapped key is too short to contain salt and tag")
    if len(wrapped.nonce) != IV_LENGTH:
        raise FormatError(f"Wrapped key nonce must be {IV_LENGTH} bytes")
    if len(wrapped.recipient_public_key) != ADDRESS_KEY_LENGTH:
        raise FormatError(f"Recipient key must be {ADDRESS_KEY_LENGTH} bytes")
    if not wrapped.ephemeral_public_key:
        raise FormatError("Wrapped key has no ephemeral public key")

    salt = wrapped.encrypted_aes_key[:WRAP_SALT_LENGTH]
    sealed = wrapped.encrypted_aes_key[WRAP_SALT_LENGTH:]
    aead = AESGCM(_wrapping_key(wrapped.ephemeral_public_key, wrapped.recipient_public_key, salt))
    try:
        return bytearray(aead.decrypt(wrapped.nonce, sealed, None))
    except InvalidTag as exc:
        raise AuthenticationFailed("Failed to decrypt AES key: invalid key or corrupted data") from exc


def _unwrap_legacy(wrapped: LegacyWrappedKey) -> bytearray:
    # v1 kept the secretbox key in front of the ciphertext
    logger.warning("Unwrapping a legacy (v1) wrapped key; re-wrap with v2")
    if len(wrapped.encrypted_aes_key) < LEGACY_SECRET_LENGTH + nacl.secret.SecretBox.MACBYTES:
        raise FormatError("Legacy wrapped key is too short")
    if len(wrapped.nonce) != nacl.secret.SecretBox.NONCE_SIZE:
        raise FormatError(f"Legacy nonce must be {nacl.secret.SecretBox.NONCE_SIZE} bytes")

    secret = wrapped.encrypted_aes_key[:LEGACY_SECRET_LENGTH]
    sealed = wrapped.encrypted_aes_key[LEGACY_SECRET_LENGTH:]
    try:
        return bytearray(nacl.secret.SecretBox(secret).decrypt(sealed, wrapped.nonce))
    except nacl.exceptions.CryptoError as exc:
        raise AuthenticationFailed("Decryption failed - invalid key or corrupted data") from exc


def unwrap(
    wrapped: Union[AnyWrappedKey, Dict[str, Any]],
    expected_address: Optional[str] = None,
) -> bytearray:
    """Recover the message key from a v2 or legacy wrapped key.

    If ``expected_address`` is given, a v2 key labelled for another address is
    rejected with :class:`RecipientMismatch` before any decryption. The
    returned buffer should be erased by the caller once imported.
    """
    if isinstance(wrapped, dict):
        wrapped = parse_wrapped_key(wrapped)
    if isinstance(wrapped, PassphraseWrappedKey):
        raise ValidationError("Passphrase-wrapped keys need unwrap_with_passphrase()")

    if isinstance(wrapped, WrappedKey):
        if wrapped.version != WRAP_VERSION:
            raise FormatError(f"Unsupported wrapped key version {wrapped.version!r}")
        if expected_address is not None and derive_address_key(expected_address) != wrapped.recipient_public_key:
            raise RecipientMismatch("Wrapped key is not addressed to this recipient")
        return _unwrap_v2(wrapped)

    if isinstance(wrapped, LegacyWrappedKey):
        return _unwrap_legacy(wrapped)

    raise ValidationError(f"Unsupported wrapped key type {type(wrapped).__name__}")


# ----------------------------------------------------------------------
# Passphrase wrap
# ----------------------------------------------------------------------


def wrap_with_passphrase(key_bytes: BytesLike, passphrase: str) -> PassphraseWrappedKey:
    _check_key_bytes(key_bytes)
    salt = generate_salt()
    iv = random_bytes(IV_LENGTH)
    aead = AESGCM(derive_passphrase_key(passphrase, salt))
    return PassphraseWrappedKey(encrypted_key=aead.encrypt(iv, key_bytes, None), salt=salt, iv=iv)


def unwrap_with_passphrase(
    wrapped: Union[PassphraseWrappedKey, Dict[str, Any]],
    passphrase: str,
) -> bytearray:
    """Recover a passphrase-wrapped key; a wrong passphrase raises
    :class:`AuthenticationFailed`."""
    if isinstance(wrapped, dict):
        wrapped = PassphraseWrappedKey.from_dict(wrapped)
    if len(wrapped.iv) != IV_LENGTH:
        raise FormatError(f"IV must be {IV_LENGTH} bytes")
    aead = AESGCM(derive_passphrase_key(passphrase, wrapped.salt))
    try:
        return bytearray(aead.decrypt(wrapped.iv, wrapped.encrypted_key, None))
    except InvalidTag as exc:
        raise AuthenticationFailed("Failed to decrypt with passphrase: wrong passphrase or corrupted data") from exc
