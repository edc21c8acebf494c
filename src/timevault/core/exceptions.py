"""
Exceptions for TimeVault
Everything derives from TimeVaultError so callers have a single catch-all
"""

from typing import Optional


class TimeVaultError(Exception):
    # general container for errors
    pass


class ValidationError(TimeVaultError):
    # raised on malformed input, before any crypto runs
    pass


class InvalidAddress(ValidationError):
    # raised when a recipient/sender address is not 0x + 40 hex chars
    pass


class AuthenticationFailed(TimeVaultError):
    # raised when an AEAD tag does not verify (wrong key or corrupted data)
    pass


class RecipientMismatch(AuthenticationFailed):
    # raised when a wrapped key is labelled for a different address
    pass


class IntegrityMismatch(TimeVaultError):
    # raised on a digest mismatch, checked before decryption is attempted
    pass


class FormatError(TimeVaultError):
    # raised when a blob header/length prefix is inconsistent with its size
    pass


class PlatformUnavailable(TimeVaultError):
    # raised when no CSPRNG or crypto provider is available
    pass


class StorageError(TimeVaultError):
    # raised if blob storage fails in some way
    pass


class BlobNotFoundError(StorageError):
    # raised when a content id is not in the store
    pass


class AnchorError(TimeVaultError):
    # raised when the ledger cannot store or find a record
    pass


class MessageLockedError(TimeVaultError):
    # raised when unlocking before the unlock time

    def __init__(self, message: str, minutes_remaining: int = 0):
        super().__init__(message)
        self.minutes_remaining = minutes_remaining


class PipelineError(TimeVaultError):
    """Failure inside a message pipeline, tagged with the stage it happened in.

    The original exception is kept on ``cause`` (and ``__cause__``) so a UI can
    tell "wrong key" (:class:`AuthenticationFailed`) from "corrupted data"
    (:class:`IntegrityMismatch`).
    """

    def __init__(self, stage: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.stage = stage
        self.cause = cause
        if message is None:
            detail = str(cause) if cause is not None else "unknown error"
            message = f"{stage} failed: {detail}"
        super().__init__(message)

    @property
    def kind(self) -> str:
        return type(self.cause).__name__ if self.cause is not None else "unknown"
