from __future__ import annotations

import os
import stat
import sys
from pathlib import Path

import pytest

from audiocast import config as config_module


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Point settings at an empty config file and a state file under tmp_path."""

    config_path = tmp_path / "config.yaml"
    config_path.write_text("{}\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AUDIOCAST_CONFIG", str(config_path))
    monkeypatch.setenv("AUDIOCAST_STATE", str(tmp_path / "state.yaml"))
    for name in (
        "DEV",
        "FFMPEG_BIN",
        "AUDIOCAST_DRIVER",
        "AUDIOCAST_DEFAULT_SOURCE",
        "AUDIOCAST_ENCODING",
        "AUDIOCAST_ALLOW_CUSTOM_ARGS",
        "LISTEN_HOST",
        "LISTEN_PORT",
        "LOG_BUFFER_LINES",
    ):
        monkeypatch.delenv(name, raising=False)
    _reset_config_state(monkeypatch)
    yield config_path
    _reset_config_state(monkeypatch)


def write_fake_executable(path: Path, body: str) -> Path:
    """Write a Python script that can be exec'd directly in place of a binary."""

    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    assert os.access(path, os.X_OK)
    return path
