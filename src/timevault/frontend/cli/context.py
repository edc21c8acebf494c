"""Settings and runtime objects for the TimeVault command line."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from timevault.core.ledger import LocalLedger
from timevault.core.storage import LocalBlobStore
from timevault.message.creation import MessagePipeline

DEFAULT_STORAGE_ROOT = Path.home() / ".timevault"


@dataclass
class VaultSettings:
    storage_root: Path
    ledger_path: Path
    demo_mode: bool = False
    log_level: str = "INFO"


@dataclass
class AppContext:
    """Container for runtime objects the commands need."""

    settings: VaultSettings
    storage: LocalBlobStore
    ledger: LocalLedger
    pipeline: MessagePipeline


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    storage_root: Optional[str | Path] = None,
    ledger_path: Optional[str | Path] = None,
    demo_mode: Optional[bool] = None,
    log_level: Optional[str] = None,
) -> VaultSettings:
    """
    Read settings from the environment; explicit arguments (CLI flags) win.

    - ``TIMEVAULT_STORAGE_ROOT``: blob store root (default ``~/.timevault``)
    - ``TIMEVAULT_LEDGER_PATH``: ledger JSON file (default ``<root>/ledger.json``)
    - ``TIMEVAULT_DEMO_MODE``: ``1``/``true`` lets unlock ignore the time lock
    - ``TIMEVAULT_LOG_LEVEL``: logging level name (default ``INFO``)
    """
    env = os.environ if environ is None else environ

    root = Path(storage_root or env.get("TIMEVAULT_STORAGE_ROOT") or DEFAULT_STORAGE_ROOT).expanduser()
    ledger = Path(ledger_path or env.get("TIMEVAULT_LEDGER_PATH") or root / "ledger.json").expanduser()
    if demo_mode is None:
        demo_mode = _env_flag(env.get("TIMEVAULT_DEMO_MODE"))
    level = (log_level or env.get("TIMEVAULT_LOG_LEVEL") or "INFO").upper()

    return VaultSettings(storage_root=root, ledger_path=ledger, demo_mode=demo_mode, log_level=level)


def build_context(settings: Optional[VaultSettings] = None) -> AppContext:
    settings = settings or load_settings()
    storage = LocalBlobStore(settings.storage_root)
    ledger = LocalLedger(settings.ledger_path)
    return AppContext(
        settings=settings,
        storage=storage,
        ledger=ledger,
        pipeline=MessagePipeline(storage, ledger),
    )
