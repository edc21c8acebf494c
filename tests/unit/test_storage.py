"""Unit tests for the content-addressed blob store."""

import hashlib

import pytest

from timevault.core.exceptions import BlobNotFoundError, IntegrityMismatch, StorageError
from timevault.core.storage import LocalBlobStore


@pytest.fixture
def store(tmp_path):
    """Return a LocalBlobStore rooted in tmp_path."""
    return LocalBlobStore(tmp_path / "vault")


def test_creates_layout(store, tmp_path):
    assert (tmp_path / "vault" / "blobs").is_dir()


def test_upload_returns_sha256_content_id(store):
    data = b"encrypted bytes"
    cid = store.upload(data)
    assert cid == hashlib.sha256(data).hexdigest()
    assert store.blob_path(cid).read_bytes() == data


def test_upload_accepts_bytearray(store):
    data = bytearray(b"mutable ciphertext")
    cid = store.upload(data, name="clip.mp4")
    assert store.download(cid) == bytes(data)


def test_upload_is_idempotent(store):
    first = store.upload(b"same", name="a.bin")
    second = store.upload(b"same")
    assert first == second
    assert len(list(store.blob_root.iterdir())) == 1
    # the first name is kept
    assert store.describe(first)["name"] == "a.bin"


def test_download_roundtrip(store):
    cid = store.upload(b"\x00\x01\x02")
    assert store.download(cid) == b"\x00\x01\x02"
    assert store.exists(cid)


def test_download_missing(store):
    with pytest.raises(BlobNotFoundError):
        store.download("0" * 64)


def test_invalid_content_id(store):
    with pytest.raises(StorageError, match="Invalid content id"):
        store.download("../../etc/passwd")
    with pytest.raises(StorageError):
        store.download("AB" * 32)


def test_download_detects_corruption(store):
    cid = store.upload(b"original")
    store.blob_path(cid).write_bytes(b"tampered")
    with pytest.raises(IntegrityMismatch):
        store.download(cid)


def test_describe(store):
    cid = store.upload(b"12345", name="clip.bin")
    entry = store.describe(cid)
    assert entry["name"] == "clip.bin"
    assert entry["size"] == 5
    assert entry["stored_at"]
    with pytest.raises(BlobNotFoundError):
        store.describe("1" * 64)


def test_delete(store):
    cid = store.upload(b"orphan")
    assert store.delete(cid) is True
    assert not store.exists(cid)
    assert store.delete(cid) is False
    with pytest.raises(BlobNotFoundError):
        store.describe(cid)


def test_index_persists_across_instances(tmp_path):
    cid = LocalBlobStore(tmp_path).upload(b"persist", name="p.bin")
    assert LocalBlobStore(tmp_path).describe(cid)["name"] == "p.bin"


def test_unreadable_index(store):
    store.index_path.write_text("{not json")
    with pytest.raises(StorageError, match="index"):
        store.upload(b"data")
