"""AES-256-GCM blob codec with a memory-bounded chunked mode.

Standard layout (inputs below 50 MiB):
- 12 bytes: random IV
- N bytes: ciphertext followed by the 16 byte GCM tag

Chunked layout (inputs of 50 MiB and up, all integers little-endian):
- 4 bytes: chunk count (u32)
- 12 bytes: base IV
- per chunk: 4 byte ciphertext length (u32) + ciphertext + tag

Each chunk is sealed independently under ``base IV XOR u32le(index)`` (last
four bytes), so the nonce of chunk ``i`` is unique per encryption and bound to
its position. There is no format byte: :func:`detect_format` tells the two
layouts apart heuristically and the layout has to stay that way for existing
blobs to keep decrypting.
"""

from __future__ import annotations

import logging
import os
import struct
import tempfile
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Iterator, Optional, Union

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from timevault.core.exceptions import (
    AuthenticationFailed,
    FormatError,
    PlatformUnavailable,
    ValidationError,
)
from timevault.core.models import (
    BlobFormat,
    BytesLike,
    ChunkedEncryptionResult,
    EncryptedBlob,
    EncryptionProgress,
    SymmetricKey,
)
from timevault.core.erase import secure_erase

logger = logging.getLogger(__name__)

ALGORITHM = "AES-GCM"
KEY_LENGTH = 256
KEY_BYTES = KEY_LENGTH // 8
IV_LENGTH = 12  # 96 bits, the GCM recommended size
TAG_LENGTH = 16  # 128 bit tag

CHUNK_SIZE = 1024 * 1024
LARGE_FILE_THRESHOLD = 50 * 1024 * 1024
# 10 GiB of 1 MiB chunks; also the upper bound format detection accepts
MAX_CHUNKS = 10_000

_HEADER = struct.Struct("<I12s")
_LENGTH = struct.Struct("<I")
HEADER_SIZE = _HEADER.size  # 16
# smallest chunk record format detection will believe in: prefix + 1 byte
MIN_CHUNK_RECORD = _LENGTH.size + 1

ProgressCallback = Callable[[EncryptionProgress], None]
KeyLike = Union[SymmetricKey, bytes, bytearray]


# ----------------------------------------------------------------------
# Keys and primitives
# ----------------------------------------------------------------------


def random_bytes(length: int) -> bytes:
    """Bytes from the OS CSPRNG; :class:`PlatformUnavailable` if there is none."""
    try:
        return os.urandom(length)
    except NotImplementedError as exc:
        raise PlatformUnavailable("No cryptographically secure random source available") from exc


def generate_key() -> SymmetricKey:
    """Generate a fresh 256-bit AES-GCM key."""
    return SymmetricKey(random_bytes(KEY_BYTES))


def import_key(raw: BytesLike) -> SymmetricKey:
    if len(raw) != KEY_BYTES:
        raise ValidationError(f"AES-256 key must be {KEY_BYTES} bytes, got {len(raw)}")
    return SymmetricKey(raw)


def export_key(key: SymmetricKey) -> bytearray:
    """Copy of the raw key bytes. Erase it with :func:`secure_erase` when done."""
    return key.export()


def _aead(key: KeyLike) -> AESGCM:
    material = key.material() if isinstance(key, SymmetricKey) else key
    if len(material) != KEY_BYTES:
        raise ValidationError(f"AES-256 key must be {KEY_BYTES} bytes, got {len(material)}")
    try:
        return AESGCM(material)
    except UnsupportedAlgorithm as exc:
        raise PlatformUnavailable("AES-GCM is not supported by the crypto backend") from exc


def derive_chunk_iv(base_iv: bytes, chunk_index: int) -> bytes:
    """XOR ``chunk_index`` (u32 little-endian) into the last 4 bytes of ``base_iv``."""
    if len(base_iv) != IV_LENGTH:
        raise ValidationError(f"Base IV must be {IV_LENGTH} bytes")
    if not 0 <= chunk_index <= 0xFFFFFFFF:
        raise ValidationError("Chunk index out of range")
    iv = bytearray(base_iv)
    for i, b in enumerate(chunk_index.to_bytes(4, "little")):
        iv[IV_LENGTH - 4 + i] ^= b
    return bytes(iv)


def _report(on_progress: Optional[ProgressCallback], processed: int, total: int, chunk: int, chunks: int) -> None:
    if on_progress is None:
        return
    percentage = round(processed / total * 100) if total else 100
    on_progress(
        EncryptionProgress(
            bytes_processed=processed,
            total_bytes=total,
            percentage=percentage,
            current_chunk=chunk,
            total_chunks=chunks,
        )
    )


# ----------------------------------------------------------------------
# Standard (single shot)
# ----------------------------------------------------------------------


def encrypt_standard(plaintext: BytesLike, key: KeyLike) -> EncryptedBlob:
    aead = _aead(key)
    iv = random_bytes(IV_LENGTH)
    try:
        ciphertext = aead.encrypt(iv, plaintext, None)
    except (TypeError, OverflowError) as exc:
        raise ValidationError(f"Failed to encrypt blob: {exc}") from exc
    return EncryptedBlob(iv=iv, ciphertext=ciphertext)


def decrypt_standard(blob: Union[EncryptedBlob, BytesLike], key: KeyLike) -> bytes:
    """Decrypt an :class:`EncryptedBlob` or its ``iv || ciphertext`` wire form."""
    if not isinstance(blob, EncryptedBlob):
        blob = EncryptedBlob.from_bytes(blob, IV_LENGTH, TAG_LENGTH)
    if len(blob.iv) != IV_LENGTH:
        raise FormatError(f"IV must be {IV_LENGTH} bytes")
    aead = _aead(key)
    try:
        return aead.decrypt(blob.iv, blob.ciphertext, None)
    except InvalidTag as exc:
        raise AuthenticationFailed("Failed to decrypt blob: authentication tag mismatch") from exc


# ----------------------------------------------------------------------
# Chunked
# ----------------------------------------------------------------------


def count_chunks(total_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    # an empty input still gets one (empty) chunk so the header count is non-zero
    return max(1, -(-total_size // chunk_size))


def _buffer_chunks(data: BytesLike, chunk_size: int) -> Iterator[memoryview]:
    view = memoryview(data).cast("B")
    total = len(view)
    for start in range(0, max(total, 1), chunk_size):
        yield view[start:start + chunk_size]


def _file_chunks(fh: BinaryIO, chunk_size: int, total_size: int) -> Iterator[bytes]:
    remaining = total_size
    while True:
        chunk = fh.read(min(chunk_size, remaining))
        if len(chunk) != min(chunk_size, remaining):
            raise ValidationError(
                f"Input ended early: expected {remaining} more bytes, got {len(chunk)}"
            )
        yield chunk
        remaining -= len(chunk)
        if remaining <= 0:
            return


def _encrypt_chunks(
    chunks: Iterable[BytesLike],
    write: Callable[[bytes], object],
    key: KeyLike,
    total_size: int,
    chunk_size: int,
    on_progress: Optional[ProgressCallback],
) -> tuple[bytes, int]:
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive")
    total_chunks = count_chunks(total_size, chunk_size)
    if total_chunks > MAX_CHUNKS:
        raise ValidationError(
            f"Input needs {total_chunks} chunks; at most {MAX_CHUNKS} are supported"
        )

    aead = _aead(key)
    base_iv = random_bytes(IV_LENGTH)
    write(_HEADER.pack(total_chunks, base_iv))

    processed = 0
    index = 0
    # strictly sequential: chunk i is sealed and written before chunk i+1 is read
    for chunk in chunks:
        ciphertext = aead.encrypt(derive_chunk_iv(base_iv, index), chunk, None)
        write(_LENGTH.pack(len(ciphertext)))
        write(ciphertext)
        processed += len(chunk)
        index += 1
        _report(on_progress, processed, total_size, index, total_chunks)

    if index != total_chunks:
        raise ValidationError(f"Produced {index} chunks, expected {total_chunks}")
    return base_iv, total_chunks


def encrypt_chunked(
    plaintext: BytesLike,
    key: KeyLike,
    chunk_size: int = CHUNK_SIZE,
    on_progress: Optional[ProgressCallback] = None,
) -> ChunkedEncryptionResult:
    """Encrypt ``plaintext`` as independent AES-GCM chunks.

    Works chunk by chunk over a memoryview of the input, so only one chunk's
    ciphertext is in flight at a time besides the output buffer.
    """
    total_size = len(plaintext)
    out = bytearray()
    base_iv, total_chunks = _encrypt_chunks(
        _buffer_chunks(plaintext, chunk_size), out.extend, key, total_size, chunk_size, on_progress
    )
    logger.debug("Encrypted %d bytes into %d chunks", total_size, total_chunks)
    return ChunkedEncryptionResult(
        encrypted=out,
        iv=base_iv,
        total_chunks=total_chunks,
        original_size=total_size,
        format=BlobFormat.CHUNKED,
    )


def _decrypt_chunks(
    read: Callable[[int], bytes],
    blob_size: int,
    key: KeyLike,
    emit: Callable[[bytes], object],
    on_progress: Optional[ProgressCallback],
) -> int:
    header = read(HEADER_SIZE)
    if len(header) < HEADER_SIZE:
        raise FormatError("Chunked blob too short to contain a header")
    total_chunks, base_iv = _HEADER.unpack(header)
    if not 1 <= total_chunks <= MAX_CHUNKS:
        raise FormatError(f"Implausible chunk count {total_chunks}")

    remaining = blob_size - HEADER_SIZE
    if remaining < total_chunks * (_LENGTH.size + TAG_LENGTH):
        raise FormatError(
            f"Blob of {blob_size} bytes is too small for {total_chunks} chunks"
        )
    expected_plain = remaining - total_chunks * (_LENGTH.size + TAG_LENGTH)

    aead = _aead(key)
    processed = 0
    for index in range(total_chunks):
        prefix = read(_LENGTH.size)
        if len(prefix) < _LENGTH.size:
            raise FormatError(f"Truncated length prefix for chunk {index}")
        (length,) = _LENGTH.unpack(prefix)
        remaining -= _LENGTH.size
        if length < TAG_LENGTH or length > remaining:
            raise FormatError(f"Chunk {index} length {length} is inconsistent with blob size")
        ciphertext = read(length)
        if len(ciphertext) != length:
            raise FormatError(f"Truncated ciphertext for chunk {index}")
        remaining -= length
        try:
            plain = aead.decrypt(derive_chunk_iv(base_iv, index), ciphertext, None)
        except InvalidTag as exc:
            raise AuthenticationFailed(
                f"Failed to decrypt blob (chunked): chunk {index} failed authentication"
            ) from exc
        emit(plain)
        processed += len(plain)
        _report(on_progress, processed, expected_plain, index + 1, total_chunks)

    if remaining != 0:
        raise FormatError(f"{remaining} trailing bytes after the last chunk")
    return processed


def decrypt_chunked(
    blob: BytesLike,
    key: KeyLike,
    on_progress: Optional[ProgressCallback] = None,
) -> bytearray:
    """Decrypt a chunked blob. Fails closed: on any error nothing is returned
    and the plaintext decrypted so far is wiped."""
    view = memoryview(blob).cast("B")
    cursor = 0

    def read(n: int) -> bytes:
        nonlocal cursor
        piece = view[cursor:cursor + n]
        cursor += len(piece)
        return piece

    out = bytearray()
    try:
        _decrypt_chunks(read, len(view), key, out.extend, on_progress)
    except BaseException:
        secure_erase(out)
        raise
    return out


# ----------------------------------------------------------------------
# Files (bounded memory)
# ----------------------------------------------------------------------


def encrypt_file(
    in_path: Union[str, Path],
    out_path: Union[str, Path],
    key: KeyLike,
    chunk_size: int = CHUNK_SIZE,
    on_progress: Optional[ProgressCallback] = None,
) -> dict:
    """Stream ``in_path`` into the chunked layout at ``out_path``.

    Peak memory is about one chunk regardless of the file size. The output is
    written to a temporary file next to ``out_path`` and moved into place once
    complete.
    """
    src = Path(in_path).expanduser()
    dst = Path(out_path).expanduser()
    total_size = src.stat().st_size

    with tempfile.NamedTemporaryFile(dir=dst.parent, prefix=f".{dst.name}.", delete=False) as tmpf:
        tmp_path = Path(tmpf.name)
    try:
        with open(src, "rb") as inf, open(tmp_path, "wb") as outf:
            base_iv, total_chunks = _encrypt_chunks(
                _file_chunks(inf, chunk_size, total_size),
                outf.write,
                key,
                total_size,
                chunk_size,
                on_progress,
            )
        os.replace(tmp_path, dst)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    logger.debug("Encrypted %s (%d bytes, %d chunks)", src.name, total_size, total_chunks)
    return {
        "path": str(dst),
        "iv": base_iv,
        "total_chunks": total_chunks,
        "original_size": total_size,
        "encrypted_size": dst.stat().st_size,
    }


def decrypt_file(
    in_path: Union[str, Path],
    out_path: Union[str, Path],
    key: KeyLike,
    on_progress: Optional[ProgressCallback] = None,
) -> int:
    """Decrypt a blob file (either layout) into ``out_path``; returns the plaintext size.

    Plaintext goes to a temporary file that only replaces ``out_path`` after
    every chunk authenticated; on failure it is removed and ``out_path`` is
    left untouched.
    """
    src = Path(in_path).expanduser()
    dst = Path(out_path).expanduser()
    fmt = detect_file_format(src)
    if fmt is BlobFormat.UNKNOWN:
        raise FormatError(f"{src.name} is not a recognised encrypted blob")

    with tempfile.NamedTemporaryFile(dir=dst.parent, prefix=f".{dst.name}.", delete=False) as tmpf:
        tmp_path = Path(tmpf.name)
    try:
        with open(src, "rb") as inf, open(tmp_path, "wb") as outf:
            if fmt is BlobFormat.CHUNKED:
                size = _decrypt_chunks(inf.read, src.stat().st_size, key, outf.write, on_progress)
            else:
                plain = decrypt_standard(inf.read(), key)
                outf.write(plain)
                size = len(plain)
                _report(on_progress, size, size, 1, 1)
        os.replace(tmp_path, dst)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return size


# ----------------------------------------------------------------------
# Format detection and dispatch
# ----------------------------------------------------------------------


def _plausible_count(count: int, size: int) -> bool:
    return 1 <= count <= MAX_CHUNKS and size >= HEADER_SIZE + count * MIN_CHUNK_RECORD


def detect_format(blob: BytesLike) -> BlobFormat:
    """Classify an encrypted blob as chunked, standard or unknown.

    Chunked needs a plausible count (1..10000), a size that fits that many
    records, and length prefixes that walk the blob exactly to its end.
    Anything else long enough to hold an IV and a tag is treated as standard.
    """
    view = memoryview(blob).cast("B")
    size = len(view)
    if size >= HEADER_SIZE:
        (count,) = _LENGTH.unpack_from(view, 0)
        if _plausible_count(count, size) and _walk_records(view, count):
            return BlobFormat.CHUNKED
    if size >= IV_LENGTH + TAG_LENGTH:
        return BlobFormat.STANDARD
    return BlobFormat.UNKNOWN


def _walk_records(view: memoryview, count: int) -> bool:
    offset = HEADER_SIZE
    size = len(view)
    for _ in range(count):
        if offset + _LENGTH.size > size:
            return False
        (length,) = _LENGTH.unpack_from(view, offset)
        if length < TAG_LENGTH:
            return False
        offset += _LENGTH.size + length
        if offset > size:
            return False
    return offset == size


def detect_file_format(path: Union[str, Path]) -> BlobFormat:
    """:func:`detect_format` for a file, reading only the header and prefixes."""
    path = Path(path)
    size = path.stat().st_size
    with open(path, "rb") as f:
        if size >= HEADER_SIZE:
            (count,) = _LENGTH.unpack(f.read(_LENGTH.size))
            if _plausible_count(count, size):
                offset = HEADER_SIZE
                for _ in range(count):
                    if offset + _LENGTH.size > size:
                        break
                    f.seek(offset)
                    (length,) = _LENGTH.unpack(f.read(_LENGTH.size))
                    if length < TAG_LENGTH:
                        break
                    offset += _LENGTH.size + length
                else:
                    if offset == size:
                        return BlobFormat.CHUNKED
    if size >= IV_LENGTH + TAG_LENGTH:
        return BlobFormat.STANDARD
    return BlobFormat.UNKNOWN


def should_use_chunked(size_or_data: Union[int, BytesLike]) -> bool:
    size = size_or_data if isinstance(size_or_data, int) else len(size_or_data)
    return size >= LARGE_FILE_THRESHOLD


def get_chunked_threshold() -> int:
    return LARGE_FILE_THRESHOLD


def encrypt_smart(
    plaintext: BytesLike,
    key: KeyLike,
    on_progress: Optional[ProgressCallback] = None,
) -> ChunkedEncryptionResult:
    """Standard encryption below 50 MiB, chunked at or above it (inclusive)."""
    size = len(plaintext)
    if should_use_chunked(size):
        return encrypt_chunked(plaintext, key, CHUNK_SIZE, on_progress)

    blob = encrypt_standard(plaintext, key)
    encrypted = bytearray(blob.iv)
    encrypted.extend(blob.ciphertext)
    _report(on_progress, size, size, 1, 1)
    return ChunkedEncryptionResult(
        encrypted=encrypted,
        iv=blob.iv,
        total_chunks=1,
        original_size=size,
        format=BlobFormat.STANDARD,
    )


def decrypt_smart(
    blob: BytesLike,
    key: KeyLike,
    on_progress: Optional[ProgressCallback] = None,
) -> Union[bytes, bytearray]:
    fmt = detect_format(blob)
    if fmt is BlobFormat.CHUNKED:
        return decrypt_chunked(blob, key, on_progress)
    if fmt is BlobFormat.UNKNOWN:
        raise FormatError(f"Blob of {len(blob)} bytes is not a recognised encrypted format")
    result = decrypt_standard(blob, key)
    _report(on_progress, len(result), len(result), 1, 1)
    return result


def get_metadata() -> dict:
    return {
        "algorithm": ALGORITHM,
        "keyLength": KEY_LENGTH,
        "ivLength": IV_LENGTH,
        "tagLength": TAG_LENGTH,
    }
