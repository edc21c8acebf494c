"""
Content-addressed blob storage for encrypted messages

Structure Map for reference:
==============================
 - <storage_root>/
      - blobs/
          - {sha256}        (encrypted media or wrapped-key JSON)
      - index.json          (content id -> name, size, stored_at)
      - ledger.json         (see core/ledger.py)
==============================
For reference:
> Everything that reaches this store is already encrypted (or is a wrapped key),
  so blobs are opaque bytes addressed by their SHA-256.
> Uploading the same bytes twice is idempotent and returns the same content id.
> The pipelines only depend on the BlobStorage protocol; LocalBlobStore is the
  filesystem implementation used by the CLI and the tests. An IPFS/Arweave
  client would implement the same two methods.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

from .exceptions import BlobNotFoundError, IntegrityMismatch, StorageError
from .hashing import calculate_sha256_bytes
from .models import BytesLike

logger = logging.getLogger(__name__)

_CID_RE = re.compile(r"^[0-9a-f]{64}$")


class BlobStorage(Protocol):
    def upload(self, data: BytesLike, name: Optional[str] = None) -> str:
        """Store ``data`` and return its content id.

        Callers may reuse or wipe ``data`` once this returns; an implementation
        that keeps the bytes around must take its own copy.
        """
        ...

    def download(self, content_id: str) -> bytes:
        ...


class LocalBlobStore:
    """Filesystem BlobStorage; content id is the hex SHA-256 of the bytes."""

    def __init__(self, root_path: Optional[Union[str, Path]] = None):
        self.root = (
            Path(root_path).expanduser() if root_path else Path.home() / ".timevault"
        )
        self.root.mkdir(parents=True, exist_ok=True)
        self.blob_root.mkdir(parents=True, exist_ok=True)
        # uploads run on a thread pool; the index file is shared
        self._index_lock = threading.Lock()

    @property
    def blob_root(self) -> Path:
        return self.root / "blobs"

    @property
    def index_path(self) -> Path:
        return self.root / "index.json"

    def blob_path(self, content_id: str) -> Path:
        if not isinstance(content_id, str) or not _CID_RE.match(content_id):
            raise StorageError(f"Invalid content id {content_id!r}")
        return self.blob_root / content_id

    def exists(self, content_id: str) -> bool:
        return self.blob_path(content_id).exists()

    def upload(self, data: BytesLike, name: Optional[str] = None) -> str:
        content_id = calculate_sha256_bytes(data)
        destination = self.blob_path(content_id)
        if not destination.exists():
            self._write_atomic(destination, data)
            logger.debug("Stored blob %s (%d bytes)", content_id, len(data))
        else:
            logger.debug("Blob %s already present", content_id)
        self._record(content_id, name, len(data))
        return content_id

    def download(self, content_id: str) -> bytes:
        path = self.blob_path(content_id)
        if not path.exists():
            raise BlobNotFoundError(f"Blob {content_id} not found")
        with open(path, "rb") as f:
            data = f.read()
        if calculate_sha256_bytes(data) != content_id:
            raise IntegrityMismatch(f"Blob {content_id} does not match its content id")
        return data

    def delete(self, content_id: str) -> bool:
        """Remove an orphaned blob; returns False if it was not there."""
        path = self.blob_path(content_id)
        if not path.exists():
            return False
        path.unlink()
        with self._index_lock:
            index = self._load_index()
            index.pop(content_id, None)
            self._save_index(index)
        return True

    def describe(self, content_id: str) -> Dict[str, Any]:
        with self._index_lock:
            entry = self._load_index().get(content_id)
        if entry is None:
            raise BlobNotFoundError(f"Blob {content_id} not found")
        return entry

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _write_atomic(self, destination: Path, data: BytesLike) -> None:
        with tempfile.NamedTemporaryFile(dir=destination.parent, delete=False) as tmpf:
            tmp_path = Path(tmpf.name)
            tmpf.write(data)
        try:
            os.replace(tmp_path, destination)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to store blob: {exc}") from exc

    def _record(self, content_id: str, name: Optional[str], size: int) -> None:
        with self._index_lock:
            index = self._load_index()
            entry = index.get(content_id, {})
            entry.update(
                {
                    "name": name or entry.get("name"),
                    "size": size,
                    "stored_at": entry.get("stored_at")
                    or datetime.now(timezone.utc).isoformat(),
                }
            )
            index[content_id] = entry
            self._save_index(index)

    def _load_index(self) -> Dict[str, Any]:
        if not self.index_path.exists():
            return {}
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Blob index is unreadable: {exc}") from exc

    def _save_index(self, index: Dict[str, Any]) -> None:
        raw = json.dumps(index, ensure_ascii=False, indent=2).encode("utf-8")
        self._write_atomic(self.index_path, raw)
