"""Best-effort erasure of key and plaintext buffers.

CPython gives no guarantee here: immutable ``bytes`` cannot be overwritten,
the allocator may have copied a buffer before it was resized, and the AEAD
contexts from ``cryptography`` keep their own copy of the key. Overwriting the
mutable buffers we do own shortens their lifetime in memory; it is not a
security boundary.
"""

from __future__ import annotations

import contextlib
import logging
import os
from typing import Iterator, Union

logger = logging.getLogger(__name__)

# buffers above this size are only zero-filled
MAX_RANDOM_FILL = 65536

Erasable = Union[bytearray, memoryview, None]


def _overwrite(view: memoryview) -> None:
    length = len(view)
    if length == 0:
        return
    if length <= MAX_RANDOM_FILL:
        view[:] = os.urandom(length)
    view[:] = bytes(length)


def secure_erase(*buffers: object) -> None:
    """Overwrite every mutable buffer in ``buffers``.

    ``None`` is ignored. Immutable objects (``bytes``, read-only views) are
    skipped with a debug message since there is nothing we can overwrite.
    Never raises: a failed wipe is logged and the remaining buffers are still
    processed.
    """
    for buf in buffers:
        if buf is None:
            continue
        try:
            view = memoryview(buf)
        except TypeError:
            logger.debug("secure_erase: skipping non-buffer %s", type(buf).__name__)
            continue
        with view:
            if view.readonly:
                logger.debug("secure_erase: skipping read-only %s", type(buf).__name__)
                continue
            try:
                with view.cast("B") as flat:
                    _overwrite(flat)
            except (ValueError, TypeError, OSError, NotImplementedError) as exc:
                logger.warning("Secure cleanup failed: %s", exc)


@contextlib.contextmanager
def erasing(*buffers: Erasable) -> Iterator[tuple]:
    """Context manager that erases ``buffers`` on exit, however the block exits."""
    try:
        yield buffers
    finally:
        secure_erase(*buffers)

