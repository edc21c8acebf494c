"""Unit tests for CLI settings and the AppContext builder."""

from pathlib import Path

import pytest

from timevault.core.ledger import LocalLedger
from timevault.core.storage import LocalBlobStore
from timevault.frontend.cli.context import DEFAULT_STORAGE_ROOT, build_context, load_settings


def test_defaults_with_empty_environment():
    settings = load_settings(environ={})
    assert settings.storage_root == DEFAULT_STORAGE_ROOT
    assert settings.ledger_path == DEFAULT_STORAGE_ROOT / "ledger.json"
    assert settings.demo_mode is False
    assert settings.log_level == "INFO"


def test_environment_values(tmp_path):
    env = {
        "TIMEVAULT_STORAGE_ROOT": str(tmp_path / "root"),
        "TIMEVAULT_LEDGER_PATH": str(tmp_path / "chain.json"),
        "TIMEVAULT_DEMO_MODE": "true",
        "TIMEVAULT_LOG_LEVEL": "debug",
    }
    settings = load_settings(environ=env)
    assert settings.storage_root == tmp_path / "root"
    assert settings.ledger_path == tmp_path / "chain.json"
    assert settings.demo_mode is True
    assert settings.log_level == "DEBUG"


def test_ledger_defaults_under_storage_root(tmp_path):
    settings = load_settings(environ={"TIMEVAULT_STORAGE_ROOT": str(tmp_path)})
    assert settings.ledger_path == tmp_path / "ledger.json"


@pytest.mark.parametrize("value,expected", [("1", True), ("yes", True), ("0", False), ("false", False), ("", False)])
def test_demo_flag_parsing(value, expected):
    assert load_settings(environ={"TIMEVAULT_DEMO_MODE": value}).demo_mode is expected


def test_explicit_arguments_override_environment(tmp_path):
    env = {"TIMEVAULT_STORAGE_ROOT": "/nowhere", "TIMEVAULT_DEMO_MODE": "1", "TIMEVAULT_LOG_LEVEL": "ERROR"}
    settings = load_settings(
        environ=env,
        storage_root=tmp_path,
        demo_mode=False,
        log_level="warning",
    )
    assert settings.storage_root == tmp_path
    assert settings.demo_mode is False
    assert settings.log_level == "WARNING"


def test_reads_os_environ_by_default(monkeypatch, tmp_path):
    monkeypatch.setenv("TIMEVAULT_STORAGE_ROOT", str(tmp_path))
    assert load_settings().storage_root == tmp_path


def test_build_context_wires_collaborators(tmp_path):
    settings = load_settings(environ={}, storage_root=tmp_path / "store")
    ctx = build_context(settings)

    assert isinstance(ctx.storage, LocalBlobStore)
    assert isinstance(ctx.ledger, LocalLedger)
    assert ctx.pipeline.storage is ctx.storage
    assert ctx.pipeline.anchor is ctx.ledger
    assert (tmp_path / "store" / "blobs").is_dir()
    assert ctx.ledger.path == Path(tmp_path / "store" / "ledger.json")
