"""Unit tests for recipient and passphrase key wrapping."""

import dataclasses
import hashlib
import logging
import os

import nacl.secret
import pytest

from timevault.core.exceptions import (
    AuthenticationFailed,
    FormatError,
    InvalidAddress,
    RecipientMismatch,
    ValidationError,
)
from timevault.core.models import LegacyWrappedKey, PassphraseWrappedKey, WrappedKey, parse_wrapped_key, to_hex
from timevault.security.keywrap import (
    derive_address_key,
    is_valid_address,
    unwrap,
    unwrap_with_passphrase,
    validate_address,
    wrap,
    wrap_with_passphrase,
)

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


@pytest.fixture
def secret():
    return os.urandom(32)


# --- addresses ---


def test_is_valid_address():
    assert is_valid_address(ALICE)
    assert is_valid_address("  " + BOB + "  ")
    assert not is_valid_address("0x1234")
    assert not is_valid_address("a1" * 21)
    assert not is_valid_address("0x" + "zz" * 20)
    assert not is_valid_address(None)


def test_validate_address_trims_and_rejects():
    assert validate_address(f" {ALICE}\n") == ALICE
    with pytest.raises(InvalidAddress, match="required"):
        validate_address("")
    with pytest.raises(InvalidAddress, match="40 hex"):
        validate_address("0xnotanaddress")


def test_derive_address_key_is_domain_separated_sha256():
    expected = hashlib.sha256(("wrap-v2:" + ALICE.lower()).encode()).digest()
    assert derive_address_key(ALICE) == expected
    assert len(expected) == 32


def test_derive_address_key_ignores_case():
    mixed = "0x" + "A1" * 20
    assert derive_address_key(mixed) == derive_address_key(ALICE)


# --- address-bound wrap ---


def test_wrap_unwrap_roundtrip(secret):
    wrapped = wrap(secret, ALICE)
    assert unwrap(wrapped) == secret


def test_wrap_shape(secret):
    wrapped = wrap(secret, ALICE)
    assert wrapped.version == "v2"
    assert len(wrapped.nonce) == 12
    # salt + 32 byte key + tag
    assert len(wrapped.encrypted_aes_key) == 32 + 32 + 16
    assert wrapped.recipient_public_key == derive_address_key(ALICE)
    # uncompressed P-256 point
    assert len(wrapped.ephemeral_public_key) == 65
    assert wrapped.ephemeral_public_key[0] == 0x04


def test_wrap_is_randomized(secret):
    first = wrap(secret, ALICE)
    second = wrap(secret, ALICE)
    assert first.ephemeral_public_key != second.ephemeral_public_key
    assert first.encrypted_aes_key != second.encrypted_aes_key
    assert first.nonce != second.nonce


def test_wrap_rejects_bad_address(secret):
    with pytest.raises(InvalidAddress):
        wrap(secret, "0xdeadbeef")


def test_wrap_rejects_wrong_key_length():
    with pytest.raises(ValidationError, match="32 bytes"):
        wrap(b"\x00" * 31, ALICE)


def test_unwrap_from_json_dict(secret):
    payload = wrap(secret, ALICE).to_dict()
    assert payload["encryptedAESKey"].startswith("0x")
    assert payload["version"] == "v2"
    assert unwrap(payload) == secret


def test_unwrap_tampered_ciphertext(secret):
    wrapped = wrap(secret, ALICE)
    body = bytearray(wrapped.encrypted_aes_key)
    body[-1] ^= 0x01
    with pytest.raises(AuthenticationFailed):
        unwrap(dataclasses.replace(wrapped, encrypted_aes_key=bytes(body)))


def test_unwrap_swapped_ephemeral_key(secret):
    wrapped = wrap(secret, ALICE)
    other = wrap(secret, ALICE)
    with pytest.raises(AuthenticationFailed):
        unwrap(dataclasses.replace(wrapped, ephemeral_public_key=other.ephemeral_public_key))


def test_unwrap_checks_expected_recipient(secret):
    wrapped = wrap(secret, ALICE)
    assert unwrap(wrapped, expected_address=ALICE.upper().replace("0X", "0x")) == secret
    with pytest.raises(RecipientMismatch):
        unwrap(wrapped, expected_address=BOB)


def test_unwrap_needs_only_public_values(secret):
    # As built, the wrap labels a key with its recipient; everything needed to
    # recompute the wrapping key travels with the wrapped key itself.
    wrapped = wrap(secret, ALICE)
    address_key = hashlib.sha256(("wrap-v2:" + ALICE.lower()).encode()).digest()
    relabelled = WrappedKey(
        encrypted_aes_key=wrapped.encrypted_aes_key,
        nonce=wrapped.nonce,
        recipient_public_key=address_key,
        ephemeral_public_key=wrapped.ephemeral_public_key,
    )
    assert unwrap(relabelled) == secret


def test_unwrap_rejects_short_fields(secret):
    wrapped = wrap(secret, ALICE)
    with pytest.raises(FormatError):
        unwrap(dataclasses.replace(wrapped, encrypted_aes_key=b"\x00" * 20))
    with pytest.raises(FormatError):
        unwrap(dataclasses.replace(wrapped, nonce=b"\x00" * 8))
    with pytest.raises(FormatError):
        unwrap(dataclasses.replace(wrapped, ephemeral_public_key=b""))


def test_unwrap_unknown_version(secret):
    payload = wrap(secret, ALICE).to_dict()
    payload["version"] = "v3"
    with pytest.raises(FormatError, match="version"):
        unwrap(payload)
    with pytest.raises(FormatError):
        unwrap(dataclasses.replace(wrap(secret, ALICE), version="v9"))


# --- legacy ---


def _legacy(secret: bytes) -> LegacyWrappedKey:
    box_key = os.urandom(32)
    nonce = os.urandom(24)
    sealed = nacl.secret.SecretBox(box_key).encrypt(secret, nonce).ciphertext
    return LegacyWrappedKey(encrypted_aes_key=box_key + sealed, nonce=nonce, recipient_public_key=b"")


def test_legacy_unwrap(secret, caplog):
    with caplog.at_level(logging.WARNING, logger="timevault.security.keywrap"):
        assert unwrap(_legacy(secret)) == secret
    assert "legacy" in caplog.text


def test_legacy_unwrap_from_dict_without_version(secret):
    payload = _legacy(secret).to_dict()
    assert "version" not in payload
    assert "ephemeralPublicKey" not in payload
    assert isinstance(parse_wrapped_key(payload), LegacyWrappedKey)
    assert unwrap(payload) == secret


def test_legacy_tampered(secret):
    legacy = _legacy(secret)
    body = bytearray(legacy.encrypted_aes_key)
    body[-1] ^= 0x01
    with pytest.raises(AuthenticationFailed):
        unwrap(dataclasses.replace(legacy, encrypted_aes_key=bytes(body)))


def test_legacy_bad_nonce(secret):
    legacy = _legacy(secret)
    with pytest.raises(FormatError, match="nonce"):
        unwrap(dataclasses.replace(legacy, nonce=b"\x00" * 12))


# --- passphrase ---


def test_passphrase_roundtrip(secret):
    wrapped = wrap_with_passphrase(secret, "correct horse battery staple")
    assert len(wrapped.salt) == 16
    assert len(wrapped.iv) == 12
    assert len(wrapped.encrypted_key) == 32 + 16
    assert unwrap_with_passphrase(wrapped, "correct horse battery staple") == secret


def test_passphrase_roundtrip_through_json(secret):
    payload = wrap_with_passphrase(secret, "pw").to_dict()
    assert set(payload) == {"encryptedKey", "salt", "iv"}
    assert isinstance(parse_wrapped_key(payload), PassphraseWrappedKey)
    assert unwrap_with_passphrase(payload, "pw") == secret


def test_passphrase_wrong_passphrase(secret):
    wrapped = wrap_with_passphrase(secret, "right")
    with pytest.raises(AuthenticationFailed, match="passphrase"):
        unwrap_with_passphrase(wrapped, "wrong")


def test_passphrase_empty_rejected(secret):
    with pytest.raises(ValidationError):
        wrap_with_passphrase(secret, "")


def test_passphrase_key_needs_passphrase_unwrap(secret):
    with pytest.raises(ValidationError, match="unwrap_with_passphrase"):
        unwrap(wrap_with_passphrase(secret, "pw"))


def test_passphrase_bad_iv(secret):
    payload = wrap_with_passphrase(secret, "pw").to_dict()
    payload["iv"] = to_hex(b"\x00" * 8)
    with pytest.raises(FormatError):
        unwrap_with_passphrase(payload, "pw")
