"""Unit tests for the shared value objects."""

from datetime import datetime, timedelta, timezone

import pytest

from timevault.core.exceptions import FormatError, ValidationError
from timevault.core.models import (
    EncryptedBlob,
    IntegrityDigest,
    LegacyWrappedKey,
    MediaFile,
    MessageReceipt,
    MessageRecord,
    PassphraseWrappedKey,
    PipelineStage,
    SymmetricKey,
    WrappedKey,
    from_epoch_ms,
    from_hex,
    parse_wrapped_key,
    to_epoch_ms,
    to_hex,
)

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


def test_hex_helpers():
    assert to_hex(b"\x00\xff") == "0x00ff"
    assert from_hex("0x00ff") == b"\x00\xff"
    assert from_hex("00FF") == b"\x00\xff"
    assert from_hex("0X00ff") == b"\x00\xff"


def test_from_hex_rejects_garbage():
    with pytest.raises(FormatError, match="nonce"):
        from_hex("0xzz", "nonce")
    with pytest.raises(FormatError):
        from_hex(1234)


def test_epoch_ms_roundtrip():
    moment = datetime(2030, 1, 1, 12, 30, tzinfo=timezone.utc)
    assert to_epoch_ms(moment) == 1893501000000
    assert from_epoch_ms(to_epoch_ms(moment)) == moment


def test_naive_datetime_is_utc():
    naive = datetime(2030, 1, 1)
    assert to_epoch_ms(naive) == to_epoch_ms(naive.replace(tzinfo=timezone.utc))


def test_symmetric_key_erase():
    key = SymmetricKey(b"\x01" * 32)
    buffer = key.material()
    key.erase()
    assert key.erased
    assert len(key) == 0
    assert buffer == bytearray(32)
    with pytest.raises(ValidationError, match="erased"):
        key.material()
    # erasing twice is fine
    key.erase()


def test_symmetric_key_not_extractable():
    key = SymmetricKey(b"\x01" * 32, extractable=False)
    with pytest.raises(ValidationError, match="not extractable"):
        key.export()


def test_encrypted_blob_wire_form():
    blob = EncryptedBlob(iv=b"\x01" * 12, ciphertext=b"\x02" * 20)
    assert blob.to_bytes() == b"\x01" * 12 + b"\x02" * 20
    assert EncryptedBlob.from_bytes(blob.to_bytes()) == blob


def test_encrypted_blob_too_short():
    with pytest.raises(FormatError):
        EncryptedBlob.from_bytes(b"\x00" * 27)


def test_integrity_digest():
    digest = IntegrityDigest.from_hex("0x" + "AB" * 32)
    assert digest.hex == "ab" * 32
    assert str(digest) == "ab" * 32
    with pytest.raises(FormatError, match="32 bytes"):
        IntegrityDigest.from_hex("ab" * 16)


def test_parse_wrapped_key_dispatch():
    v2 = WrappedKey(b"\x01" * 80, b"\x02" * 12, b"\x03" * 32, b"\x04" * 65)
    legacy = LegacyWrappedKey(b"\x01" * 80, b"\x02" * 24, b"\x03" * 32)
    passphrase = PassphraseWrappedKey(b"\x01" * 48, b"\x02" * 16, b"\x03" * 12)

    assert parse_wrapped_key(v2.to_dict()) == v2
    assert parse_wrapped_key(legacy.to_dict()) == legacy
    assert parse_wrapped_key(passphrase.to_dict()) == passphrase


def test_parse_wrapped_key_errors():
    with pytest.raises(FormatError, match="JSON object"):
        parse_wrapped_key(["not", "a", "dict"])
    with pytest.raises(FormatError, match="nonce"):
        parse_wrapped_key({"encryptedAESKey": "0x00", "version": "v2"})


def test_wrapped_key_json_shape():
    v2 = WrappedKey(b"\x01" * 80, b"\x02" * 12, b"\x03" * 32, b"\x04" * 65)
    assert set(v2.to_dict()) == {
        "encryptedAESKey",
        "nonce",
        "recipientPublicKey",
        "ephemeralPublicKey",
        "version",
    }


def test_media_file_size():
    assert MediaFile(data=b"12345").size == 5
    assert MediaFile(data=b"").mime_type == "application/octet-stream"


def test_message_record_roundtrip():
    record = MessageRecord(
        encrypted_key_cid="k" * 64,
        encrypted_message_cid="m" * 64,
        message_hash="ab" * 32,
        unlock_at=datetime(2031, 6, 1, tzinfo=timezone.utc),
        recipient=BOB,
        sender=ALICE,
        message_id="7",
    )
    data = record.to_dict()
    assert data["unlockTimestamp"] == to_epoch_ms(record.unlock_at)
    assert MessageRecord.from_dict(data) == record


def test_message_record_malformed():
    with pytest.raises(FormatError, match="Malformed"):
        MessageRecord.from_dict({"encryptedKeyCID": "x"})
    with pytest.raises(FormatError):
        MessageRecord.from_dict(
            {
                "encryptedKeyCID": "k",
                "encryptedMessageCID": "m",
                "messageHash": "h",
                "unlockTimestamp": "soon",
                "recipient": BOB,
                "sender": ALICE,
            }
        )


def test_message_receipt_to_dict():
    receipt = MessageReceipt("1", "k", "m", "h", "0xbeef", total_chunks=3)
    assert receipt.to_dict() == {
        "messageId": "1",
        "encryptedKeyCID": "k",
        "encryptedMessageCID": "m",
        "messageHash": "h",
        "blockHash": "0xbeef",
        "totalChunks": 3,
    }


def test_pipeline_stage_values():
    assert PipelineStage.KEY_ENCRYPTION.value == "key-encryption"
    assert PipelineStage("uploading-media") is PipelineStage.UPLOADING_MEDIA
