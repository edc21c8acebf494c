"""Sender side of a time-locked message.

Flow: validate -> generate key -> encrypt media -> hash ciphertext -> wrap key
-> upload key JSON and ciphertext (in parallel) -> anchor the record.

The message key, its exported bytes and the ciphertext buffer are registered on
an ExitStack as soon as they exist, so they are wiped whether the pipeline
completes, fails or is interrupted. Storage receives its own immutable copy of
the ciphertext, never the buffer that gets wiped.
"""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Callable, Optional

from timevault.core.erase import secure_erase
from timevault.core.exceptions import PipelineError, ValidationError
from timevault.core.hashing import hash_bytes
from timevault.core.ledger import MessageAnchor
from timevault.core.models import (
    EncryptionProgress,
    IntegrityDigest,
    MessageParams,
    MessageReceipt,
    MessageRecord,
    PipelineStage,
    ProgressEvent,
    ValidationResult,
)
from timevault.core.storage import BlobStorage
from timevault.security.keywrap import is_valid_address, wrap, wrap_with_passphrase
from timevault.security.symmetric import encrypt_smart, generate_key

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[ProgressEvent], None]

STAGE_PERCENT = {
    PipelineStage.ENCRYPTING: 10,
    PipelineStage.HASHING: 25,
    PipelineStage.KEY_ENCRYPTION: 35,
    PipelineStage.UPLOADING_KEY: 50,
    PipelineStage.UPLOADING_MEDIA: 85,
    PipelineStage.SUBMITTING: 90,
    PipelineStage.COMPLETE: 100,
}


def report_stage(
    on_progress: Optional[ProgressHandler],
    stage: PipelineStage,
    percent: float,
    message: str,
) -> None:
    logger.debug("[%s] %s%% %s", stage.value, percent, message)
    if on_progress is not None:
        on_progress(ProgressEvent(stage=stage, percent=percent, message=message))


def validate_params(params: MessageParams, now: Optional[datetime] = None) -> ValidationResult:
    """Check message parameters before anything is encrypted. Never raises."""
    if params.media is None or params.media.data is None:
        return ValidationResult(False, "Media file is required", "media")

    recipient = (params.recipient_address or "").strip()
    if not recipient:
        return ValidationResult(False, "Recipient address is required", "recipient_address")
    if not is_valid_address(recipient):
        return ValidationResult(
            False,
            "Invalid Ethereum address format (must start with 0x followed by 40 hex characters)",
            "recipient_address",
        )

    if not isinstance(params.unlock_at, datetime):
        return ValidationResult(False, "Unlock timestamp is required", "unlock_at")
    unlock_at = params.unlock_at
    if unlock_at.tzinfo is None:
        unlock_at = unlock_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if unlock_at <= now:
        return ValidationResult(False, "Unlock timestamp must be in the future", "unlock_at")

    sender = (params.sender_address or "").strip()
    if not sender:
        return ValidationResult(False, "Sender account is required", "sender_address")
    if not is_valid_address(sender):
        return ValidationResult(False, "Invalid sender address format", "sender_address")

    if sender.lower() == recipient.lower():
        return ValidationResult(False, "Cannot send message to yourself", "recipient_address")

    return ValidationResult(True)


class MessagePipeline:
    """Creates messages against a blob store and a ledger."""

    def __init__(self, storage: BlobStorage, anchor: MessageAnchor, upload_workers: int = 2):
        self.storage = storage
        self.anchor = anchor
        self.upload_workers = upload_workers

    def create_message(
        self,
        params: MessageParams,
        on_progress: Optional[ProgressHandler] = None,
        passphrase: Optional[str] = None,
    ) -> MessageReceipt:
        """Encrypt, upload and anchor one message.

        Invalid parameters raise :class:`ValidationError` before a key exists.
        Anything that fails afterwards emits a ``failed`` event and is raised as
        :class:`PipelineError` carrying the stage and the original error.
        With ``passphrase`` the key is wrapped for a claim link instead of the
        recipient address.
        """
        result = validate_params(params)
        if not result.valid:
            raise ValidationError(result.error)

        recipient = params.recipient_address.strip()
        sender = params.sender_address.strip()
        media = params.media
        stage = PipelineStage.ENCRYPTING

        with ExitStack() as cleanup:
            try:
                report_stage(on_progress, stage, STAGE_PERCENT[stage], "Encrypting media...")
                key = generate_key()
                cleanup.callback(key.erase)
                encrypted = encrypt_smart(media.data, key, on_progress=self._chunk_progress(on_progress))
                cleanup.callback(secure_erase, encrypted.encrypted)

                stage = PipelineStage.HASHING
                report_stage(on_progress, stage, STAGE_PERCENT[stage], "Calculating integrity hash...")
                digest = IntegrityDigest.from_hex(hash_bytes(encrypted.encrypted))

                stage = PipelineStage.KEY_ENCRYPTION
                report_stage(on_progress, stage, STAGE_PERCENT[stage], "Encrypting key for recipient...")
                raw_key = key.export()
                cleanup.callback(secure_erase, raw_key)
                if passphrase is not None:
                    wrapped = wrap_with_passphrase(raw_key, passphrase)
                else:
                    wrapped = wrap(raw_key, recipient)
                key_document = json.dumps(
                    {
                        "encryptedKey": wrapped.to_dict(),
                        "metadata": {
                            "mimeType": media.mime_type,
                            "fileName": media.name,
                            "fileSize": media.size,
                        },
                    }
                ).encode("utf-8")

                stage = PipelineStage.UPLOADING_KEY
                report_stage(on_progress, stage, STAGE_PERCENT[stage], "Uploading encrypted key...")
                # stores may keep a reference; only the local buffer is wiped
                ciphertext = bytes(encrypted.encrypted)
                with ThreadPoolExecutor(
                    max_workers=self.upload_workers, thread_name_prefix="timevault-upload"
                ) as pool:
                    key_future = pool.submit(self.storage.upload, key_document, f"{media.name}.key.json")
                    media_future = pool.submit(self.storage.upload, ciphertext, media.name)
                    key_cid = key_future.result()
                    stage = PipelineStage.UPLOADING_MEDIA
                    report_stage(on_progress, stage, STAGE_PERCENT[stage], "Uploading encrypted media...")
                    message_cid = media_future.result()
                logger.debug("Uploaded key %s and media %s", key_cid, message_cid)

                stage = PipelineStage.SUBMITTING
                report_stage(on_progress, stage, STAGE_PERCENT[stage], "Anchoring message...")
                record = MessageRecord(
                    encrypted_key_cid=key_cid,
                    encrypted_message_cid=message_cid,
                    message_hash=digest.hex,
                    unlock_at=params.unlock_at,
                    recipient=recipient,
                    sender=sender,
                )
                anchored = self.anchor.store_message(record)

                stage = PipelineStage.COMPLETE
                report_stage(on_progress, stage, STAGE_PERCENT[stage], "Message created")
                logger.info("Created message %s for %s", anchored.message_id, recipient)
                return MessageReceipt(
                    message_id=anchored.message_id,
                    encrypted_key_cid=key_cid,
                    encrypted_message_cid=message_cid,
                    message_hash=digest.hex,
                    block_hash=anchored.block_hash,
                    total_chunks=encrypted.total_chunks,
                )
            except Exception as exc:
                logger.error("Message creation failed during %s: %s", stage.value, exc)
                try:
                    report_stage(
                        on_progress,
                        PipelineStage.FAILED,
                        STAGE_PERCENT.get(stage, 0),
                        f"Failed during {stage.value}: {exc}",
                    )
                except Exception:
                    logger.exception("Progress handler raised while reporting failure")
                raise PipelineError(stage.value, exc) from exc

    @staticmethod
    def _chunk_progress(on_progress: Optional[ProgressHandler]) -> Optional[Callable[[EncryptionProgress], None]]:
        # per-chunk progress lives inside the encrypting band (10-25)
        if on_progress is None:
            return None

        def forward(progress: EncryptionProgress) -> None:
            if progress.total_chunks <= 1:
                return
            percent = 10 + progress.percentage * 0.15
            on_progress(
                ProgressEvent(
                    stage=PipelineStage.ENCRYPTING,
                    percent=percent,
                    message=f"Encrypting chunk {progress.current_chunk}/{progress.total_chunks}",
                )
            )

        return forward
