"""
Message anchoring

The pipelines hand a MessageRecord to a MessageAnchor and get back a message id
and a block hash. On a real deployment this is a contract call; LocalLedger is
an append-only JSON file with hash-chained entries for development and tests.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Protocol, Union

from .exceptions import AnchorError
from .models import AnchorReceipt, MessageRecord

logger = logging.getLogger(__name__)

GENESIS_HASH = "0x" + "00" * 32


class MessageAnchor(Protocol):
    def store_message(self, record: MessageRecord) -> AnchorReceipt:
        ...


class LocalLedger:
    """File-backed MessageAnchor."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def store_message(self, record: MessageRecord) -> AnchorReceipt:
        with self._lock:
            data = self._load()
            messages = data["messages"]
            message_id = str(len(messages))
            previous = messages[-1]["blockHash"] if messages else GENESIS_HASH

            entry = record.to_dict()
            entry["messageId"] = message_id
            payload = json.dumps(entry, sort_keys=True).encode("utf-8")
            entry["blockHash"] = "0x" + hashlib.sha256(previous.encode("ascii") + payload).hexdigest()

            messages.append(entry)
            self._save(data)

        logger.info("Anchored message %s for %s", message_id, record.recipient)
        return AnchorReceipt(message_id=message_id, block_hash=entry["blockHash"])

    def get_message(self, message_id: str) -> MessageRecord:
        for entry in self._entries():
            if entry.get("messageId") == str(message_id):
                return MessageRecord.from_dict(entry)
        raise AnchorError(f"Message {message_id} not found")

    def list_received(self, address: str) -> List[MessageRecord]:
        wanted = address.strip().lower()
        return [
            MessageRecord.from_dict(e) for e in self._entries() if e.get("recipient", "").lower() == wanted
        ]

    def list_sent(self, address: str) -> List[MessageRecord]:
        wanted = address.strip().lower()
        return [
            MessageRecord.from_dict(e) for e in self._entries() if e.get("sender", "").lower() == wanted
        ]

    def _entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load()["messages"])

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"messages": []}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            raise AnchorError(f"Ledger file is unreadable: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise AnchorError("Ledger file has an unexpected layout")
        return data

    def _save(self, data: Dict[str, Any]) -> None:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.path.parent, delete=False
        ) as tmpf:
            tmp_path = Path(tmpf.name)
            json.dump(data, tmpf, indent=2)
        try:
            os.replace(tmp_path, self.path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise AnchorError(f"Failed to write ledger: {exc}") from exc
