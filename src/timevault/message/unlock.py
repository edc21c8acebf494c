"""Recipient side: check the time lock, recover the key, verify and decrypt."""
from __future__ import annotations

import json
import logging
import math
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from timevault.core.erase import secure_erase
from timevault.core.exceptions import (
    AuthenticationFailed,
    FormatError,
    IntegrityMismatch,
    MessageLockedError,
    PipelineError,
    ValidationError,
)
from timevault.core.hashing import verify_hash
from timevault.core.models import (
    EncryptionProgress,
    MessageRecord,
    PassphraseWrappedKey,
    PipelineStage,
    ProgressEvent,
    UnlockResult,
    parse_wrapped_key,
)
from timevault.core.storage import BlobStorage
from timevault.security.keywrap import unwrap, unwrap_with_passphrase
from timevault.security.symmetric import decrypt_smart, import_key
from .creation import ProgressHandler, report_stage

logger = logging.getLogger(__name__)

UNLOCK_PERCENT = {
    PipelineStage.VERIFYING_TIME: 10,
    PipelineStage.DOWNLOADING_KEY: 20,
    PipelineStage.DECRYPTING_KEY: 40,
    PipelineStage.DOWNLOADING_MEDIA: 60,
    PipelineStage.VERIFYING_INTEGRITY: 70,
    PipelineStage.DECRYPTING: 80,
    PipelineStage.COMPLETE: 100,
}


class IdentityProver(Protocol):
    def prove_ownership(self, address: str) -> bytes:
        ...


def verify_timestamp(unlock_at: datetime, demo_mode: bool = False, now: Optional[datetime] = None) -> None:
    """Raise :class:`MessageLockedError` while ``unlock_at`` is in the future.

    Demo mode lets locked messages through (with a warning) so a demo does not
    have to wait out the lock.
    """
    if unlock_at.tzinfo is None:
        unlock_at = unlock_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if now >= unlock_at:
        return
    if demo_mode:
        logger.warning("Demo mode: bypassing time lock (unlocks at %s)", unlock_at.isoformat())
        return
    minutes = math.ceil((unlock_at - now).total_seconds() / 60)
    raise MessageLockedError(
        f"Message is still locked. Please wait {minutes} more minute(s)", minutes_remaining=minutes
    )


def _parse_key_document(raw: bytes) -> Dict[str, Any]:
    try:
        document = json.loads(bytes(raw).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise FormatError("Encrypted key document is not valid JSON") from exc
    if not isinstance(document, dict):
        raise FormatError("Encrypted key document must be a JSON object")
    # bare wrapped keys (no metadata envelope) are accepted as well
    if "encryptedKey" in document and isinstance(document["encryptedKey"], dict):
        return document
    return {"encryptedKey": document, "metadata": {}}


def unlock_message(
    record: MessageRecord,
    storage: BlobStorage,
    identity: Optional[IdentityProver] = None,
    passphrase: Optional[str] = None,
    demo_mode: bool = False,
    on_progress: Optional[ProgressHandler] = None,
) -> UnlockResult:
    """Download, verify and decrypt the message described by ``record``.

    The ciphertext digest is checked against ``record.message_hash`` before
    any decryption, so corruption surfaces as :class:`IntegrityMismatch` and a
    wrong key as :class:`AuthenticationFailed`. Failures are raised as
    :class:`PipelineError` tagged with the stage.
    """
    stage = PipelineStage.VERIFYING_TIME

    with ExitStack() as cleanup:
        try:
            report_stage(on_progress, stage, UNLOCK_PERCENT[stage], "Verifying unlock time...")
            verify_timestamp(record.unlock_at, demo_mode)
            if identity is not None:
                proof = identity.prove_ownership(record.recipient)
                if not proof:
                    raise AuthenticationFailed(f"Could not prove ownership of {record.recipient}")

            stage = PipelineStage.DOWNLOADING_KEY
            report_stage(on_progress, stage, UNLOCK_PERCENT[stage], "Downloading encrypted key...")
            document = _parse_key_document(storage.download(record.encrypted_key_cid))

            stage = PipelineStage.DECRYPTING_KEY
            report_stage(on_progress, stage, UNLOCK_PERCENT[stage], "Decrypting key...")
            wrapped = parse_wrapped_key(document["encryptedKey"])
            if isinstance(wrapped, PassphraseWrappedKey):
                if passphrase is None:
                    raise ValidationError("This message is protected by a passphrase")
                raw_key = unwrap_with_passphrase(wrapped, passphrase)
            else:
                raw_key = unwrap(wrapped, expected_address=record.recipient)
            cleanup.callback(secure_erase, raw_key)
            key = import_key(raw_key)
            cleanup.callback(key.erase)

            stage = PipelineStage.DOWNLOADING_MEDIA
            report_stage(on_progress, stage, UNLOCK_PERCENT[stage], "Downloading encrypted media...")
            encrypted = bytearray(storage.download(record.encrypted_message_cid))
            cleanup.callback(secure_erase, encrypted)

            stage = PipelineStage.VERIFYING_INTEGRITY
            report_stage(on_progress, stage, UNLOCK_PERCENT[stage], "Verifying integrity...")
            if not verify_hash(encrypted, record.message_hash):
                raise IntegrityMismatch("Message integrity check failed - file may be corrupted")

            stage = PipelineStage.DECRYPTING
            report_stage(on_progress, stage, UNLOCK_PERCENT[stage], "Decrypting message...")
            plaintext = decrypt_smart(encrypted, key, on_progress=_decrypt_progress(on_progress))

            stage = PipelineStage.COMPLETE
            report_stage(on_progress, stage, UNLOCK_PERCENT[stage], "Message unlocked")
        except Exception as exc:
            logger.error("Unlock failed during %s: %s", stage.value, exc)
            try:
                report_stage(
                    on_progress,
                    PipelineStage.FAILED,
                    UNLOCK_PERCENT.get(stage, 0),
                    f"Failed during {stage.value}: {exc}",
                )
            except Exception:
                logger.exception("Progress handler raised while reporting failure")
            raise PipelineError(stage.value, exc) from exc

    metadata = document.get("metadata") or {}
    logger.info("Unlocked message %s", record.message_id)
    return UnlockResult(
        data=plaintext,
        mime_type=metadata.get("mimeType", "application/octet-stream"),
        file_name=metadata.get("fileName"),
        metadata=metadata,
    )


def _decrypt_progress(on_progress: Optional[ProgressHandler]) -> Optional[Callable[[EncryptionProgress], None]]:
    if on_progress is None:
        return None

    def forward(progress: EncryptionProgress) -> None:
        if progress.total_chunks <= 1:
            return
        on_progress(
            ProgressEvent(
                stage=PipelineStage.DECRYPTING,
                percent=80 + progress.percentage * 0.15,
                message=f"Decrypting chunk {progress.current_chunk}/{progress.total_chunks}",
            )
        )

    return forward
