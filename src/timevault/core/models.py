"""
Value objects shared by the codec, key wrapping and the message pipelines
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Union

from .exceptions import FormatError, ValidationError
from .erase import secure_erase


BytesLike = Union[bytes, bytearray, memoryview]


def to_hex(data: BytesLike) -> str:
    # wire hex is 0x-prefixed, the way the wallet tooling writes it
    return "0x" + bytes(data).hex()


def from_hex(value: str, field_name: str = "value") -> bytes:
    if not isinstance(value, str):
        raise FormatError(f"{field_name} must be a hex string")
    raw = value[2:] if value[:2].lower() == "0x" else value
    try:
        return bytes.fromhex(raw)
    except ValueError as exc:
        raise FormatError(f"{field_name} is not valid hex") from exc


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class BlobFormat(Enum):
    # Wire layout of an encrypted media blob
    STANDARD = "standard"
    CHUNKED = "chunked"
    UNKNOWN = "unknown"


class SymmetricKey:
    """Ephemeral AES-256 key for one message.

    The material lives in a ``bytearray`` so :meth:`erase` can overwrite it.
    It is never written anywhere by this package.
    """

    __slots__ = ("_material", "usages", "extractable")

    def __init__(self, material: BytesLike, usages: Sequence[str] = ("encrypt", "decrypt"), extractable: bool = True):
        self._material: Optional[bytearray] = bytearray(material)
        self.usages = tuple(usages)
        self.extractable = extractable

    @property
    def erased(self) -> bool:
        return self._material is None

    def material(self) -> bytearray:
        """Return the live key buffer (not a copy)."""
        if self._material is None:
            raise ValidationError("Symmetric key has been erased")
        return self._material

    def export(self) -> bytearray:
        """Return a copy of the raw key; the caller must erase it."""
        if not self.extractable:
            raise ValidationError("Symmetric key is not extractable")
        return bytearray(self.material())

    def erase(self) -> None:
        if self._material is not None:
            secure_erase(self._material)
        self._material = None

    def __len__(self) -> int:
        return len(self._material) if self._material is not None else 0

    def __repr__(self):
        state = "erased" if self.erased else f"{len(self) * 8}-bit"
        return f"SymmetricKey({state}, usages={self.usages!r})"


@dataclass(frozen=True)
class EncryptedBlob:
    """Single-shot ciphertext: ``iv || ciphertext+tag`` on the wire."""

    iv: bytes
    ciphertext: BytesLike  # includes the 16 byte GCM tag
    algorithm: str = "AES-GCM"
    key_length: int = 256

    def to_bytes(self) -> bytes:
        return bytes(self.iv) + bytes(self.ciphertext)

    @classmethod
    def from_bytes(cls, data: BytesLike, iv_length: int = 12, tag_length: int = 16) -> "EncryptedBlob":
        if len(data) < iv_length + tag_length:
            raise FormatError(
                f"Encrypted blob too short: {len(data)} bytes, need at least {iv_length + tag_length}"
            )
        view = memoryview(data)
        return cls(iv=bytes(view[:iv_length]), ciphertext=bytes(view[iv_length:]))


@dataclass
class EncryptionProgress:
    bytes_processed: int
    total_bytes: int
    percentage: int
    current_chunk: int
    total_chunks: int


@dataclass(frozen=True)
class ChunkedEncryptionResult:
    """Result of a smart or chunked encryption.

    ``encrypted`` is the complete wire blob in a mutable buffer so the pipeline
    can wipe it once uploaded.
    """

    encrypted: bytearray
    iv: bytes
    total_chunks: int
    original_size: int
    format: BlobFormat = BlobFormat.CHUNKED
    algorithm: str = "AES-GCM"
    key_length: int = 256


@dataclass(frozen=True)
class IntegrityDigest:
    digest: bytes

    @property
    def hex(self) -> str:
        return self.digest.hex()

    @classmethod
    def from_hex(cls, value: str) -> "IntegrityDigest":
        raw = from_hex(value.strip().lower(), "digest")
        if len(raw) != 32:
            raise FormatError("SHA-256 digest must be 32 bytes")
        return cls(raw)

    def __str__(self) -> str:
        return self.hex


@dataclass(frozen=True)
class WrappedKey:
    """Symmetric key wrapped for a recipient address (scheme v2)."""

    encrypted_aes_key: bytes  # salt (32B) || AES-GCM ciphertext+tag
    nonce: bytes
    recipient_public_key: bytes  # address-derived key, public
    ephemeral_public_key: bytes
    version: str = "v2"

    def to_dict(self) -> Dict[str, str]:
        return {
            "encryptedAESKey": to_hex(self.encrypted_aes_key),
            "nonce": to_hex(self.nonce),
            "recipientPublicKey": to_hex(self.recipient_public_key),
            "ephemeralPublicKey": to_hex(self.ephemeral_public_key),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WrappedKey":
        try:
            return cls(
                encrypted_aes_key=from_hex(data["encryptedAESKey"], "encryptedAESKey"),
                nonce=from_hex(data["nonce"], "nonce"),
                recipient_public_key=from_hex(data["recipientPublicKey"], "recipientPublicKey"),
                ephemeral_public_key=from_hex(data["ephemeralPublicKey"], "ephemeralPublicKey"),
                version=data.get("version", "v2"),
            )
        except KeyError as exc:
            raise FormatError(f"Wrapped key is missing field {exc.args[0]!r}") from exc


@dataclass(frozen=True)
class LegacyWrappedKey:
    """Deprecated v1 shape: no version, no ephemeral key. Read-only support."""

    encrypted_aes_key: bytes  # secret (32B) || secretbox ciphertext
    nonce: bytes
    recipient_public_key: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "encryptedAESKey": to_hex(self.encrypted_aes_key),
            "nonce": to_hex(self.nonce),
            "recipientPublicKey": to_hex(self.recipient_public_key),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LegacyWrappedKey":
        try:
            return cls(
                encrypted_aes_key=from_hex(data["encryptedAESKey"], "encryptedAESKey"),
                nonce=from_hex(data["nonce"], "nonce"),
                recipient_public_key=from_hex(data.get("recipientPublicKey", ""), "recipientPublicKey"),
            )
        except KeyError as exc:
            raise FormatError(f"Wrapped key is missing field {exc.args[0]!r}") from exc


@dataclass(frozen=True)
class PassphraseWrappedKey:
    encrypted_key: bytes
    salt: bytes
    iv: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "encryptedKey": to_hex(self.encrypted_key),
            "salt": to_hex(self.salt),
            "iv": to_hex(self.iv),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PassphraseWrappedKey":
        try:
            return cls(
                encrypted_key=from_hex(data["encryptedKey"], "encryptedKey"),
                salt=from_hex(data["salt"], "salt"),
                iv=from_hex(data["iv"], "iv"),
            )
        except KeyError as exc:
            raise FormatError(f"Passphrase-wrapped key is missing field {exc.args[0]!r}") from exc


AnyWrappedKey = Union[WrappedKey, LegacyWrappedKey, PassphraseWrappedKey]


def parse_wrapped_key(data: Dict[str, Any]) -> AnyWrappedKey:
    """Pick the wrapped-key type from the JSON shape."""
    if not isinstance(data, dict):
        raise FormatError("Wrapped key must be a JSON object")
    if "encryptedKey" in data and "salt" in data:
        return PassphraseWrappedKey.from_dict(data)
    version = data.get("version")
    if version == "v2":
        return WrappedKey.from_dict(data)
    if version is None:
        return LegacyWrappedKey.from_dict(data)
    raise FormatError(f"Unsupported wrapped key version {version!r}")


# ----------------------------------------------------------------------
# Message pipeline objects
# ----------------------------------------------------------------------


@dataclass
class MediaFile:
    data: BytesLike
    name: str = "message.bin"
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class MessageParams:
    media: Optional[MediaFile]
    recipient_address: str
    unlock_at: datetime
    sender_address: str


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    field: Optional[str] = None


class PipelineStage(Enum):
    # value is what the UI sees
    ENCRYPTING = "encrypting"
    HASHING = "hashing"
    KEY_ENCRYPTION = "key-encryption"
    UPLOADING_KEY = "uploading-key"
    UPLOADING_MEDIA = "uploading-media"
    SUBMITTING = "submitting"
    VERIFYING_TIME = "verifying-time"
    DOWNLOADING_KEY = "downloading-key"
    DECRYPTING_KEY = "decrypting-key"
    DOWNLOADING_MEDIA = "downloading-media"
    VERIFYING_INTEGRITY = "verifying-integrity"
    DECRYPTING = "decrypting"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEvent:
    stage: PipelineStage
    percent: float
    message: str


@dataclass(frozen=True)
class MessageRecord:
    """What gets anchored on the ledger for one message."""

    encrypted_key_cid: str
    encrypted_message_cid: str
    message_hash: str
    unlock_at: datetime
    recipient: str
    sender: str
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageId": self.message_id,
            "encryptedKeyCID": self.encrypted_key_cid,
            "encryptedMessageCID": self.encrypted_message_cid,
            "messageHash": self.message_hash,
            "unlockTimestamp": to_epoch_ms(self.unlock_at),
            "recipient": self.recipient,
            "sender": self.sender,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageRecord":
        try:
            return cls(
                encrypted_key_cid=data["encryptedKeyCID"],
                encrypted_message_cid=data["encryptedMessageCID"],
                message_hash=data["messageHash"],
                unlock_at=from_epoch_ms(int(data["unlockTimestamp"])),
                recipient=data["recipient"],
                sender=data["sender"],
                message_id=data.get("messageId"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise FormatError(f"Malformed message record: {exc}") from exc


@dataclass(frozen=True)
class AnchorReceipt:
    message_id: str
    block_hash: str


@dataclass(frozen=True)
class MessageReceipt:
    message_id: str
    encrypted_key_cid: str
    encrypted_message_cid: str
    message_hash: str
    block_hash: str
    total_chunks: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messageId": self.message_id,
            "encryptedKeyCID": self.encrypted_key_cid,
            "encryptedMessageCID": self.encrypted_message_cid,
            "messageHash": self.message_hash,
            "blockHash": self.block_hash,
            "totalChunks": self.total_chunks,
        }


@dataclass
class UnlockResult:
    data: BytesLike
    mime_type: str = "application/octet-stream"
    file_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
