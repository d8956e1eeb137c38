#!/usr/bin/env python3
"""
Server settings loader for audiocast.

Load order (first found wins):
  1) AUDIOCAST_CONFIG (env, absolute or relative to CWD)
  2) /etc/audiocast/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.

These are operator settings (bind address, ffmpeg binary, capture driver).
The selected device and ffmpeg arguments live in the stream state record
managed by ``audiocast.capture_store``.
"""
from __future__ import annotations
import contextlib
import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Sequence

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True
_ROUND_TRIP_YAML.preserve_quotes = True

_DEFAULTS: Dict[str, Any] = {
    "capture": {
        "driver": "",  # empty: pick from sys.platform
        "default_source": "",  # empty: driver placeholder
        "encoding": "wav",
    },
    "ffmpeg": {
        "binary": "ffmpeg",
        "allow_custom_args": True,
        "probe_timeout_sec": 5.0,
        "stop_grace_sec": 3.0,
        "chunk_bytes": 4096,
    },
    "paths": {
        "state_file": "audiocast_state.yaml",
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "buffer_lines": 500,
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 3000,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


class ConfigPersistenceError(Exception):
    """Raised when configuration changes cannot be persisted."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError):
        # Ignore parse errors and continue with other locations/defaults
        pass
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("AUDIOCAST_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/audiocast/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "AUDIOCAST_STATE": ("paths", "state_file", str),
        "FFMPEG_BIN": ("ffmpeg", "binary", str),
        "AUDIOCAST_ALLOW_CUSTOM_ARGS": ("ffmpeg", "allow_custom_args", _parse_bool),
        "AUDIOCAST_DRIVER": ("capture", "driver", lambda s: s.strip().lower()),
        "AUDIOCAST_DEFAULT_SOURCE": ("capture", "default_source", str),
        "AUDIOCAST_ENCODING": ("capture", "encoding", lambda s: s.strip().lower()),
        "LISTEN_HOST": ("web_server", "listen_host", str),
        "LISTEN_PORT": ("web_server", "listen_port", int),
        "LOG_BUFFER_LINES": ("logging", "buffer_lines", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key]
        if not raw.strip():
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # audiocast/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def state_file_path(cfg: Mapping[str, Any]) -> Path:
    """Resolve where the stream state record lives."""
    raw = str(cfg.get("paths", {}).get("state_file") or _DEFAULTS["paths"]["state_file"])
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def _number_setting(cfg: Mapping[str, Any], section: str, key: str, *, minimum: float) -> float:
    default = _DEFAULTS[section][key]
    try:
        value = float(cfg.get(section, {}).get(key, default))
    except (TypeError, ValueError):
        return float(default)
    if value < minimum:
        return float(default)
    return value


def ffmpeg_settings(cfg: Mapping[str, Any]) -> Dict[str, Any]:
    section = cfg.get("ffmpeg", {})
    binary = str(section.get("binary") or "").strip() or _DEFAULTS["ffmpeg"]["binary"]
    allow_custom = section.get("allow_custom_args", True)
    if isinstance(allow_custom, str):
        allow_custom = _parse_bool(allow_custom)
    return {
        "binary": binary,
        "allow_custom_args": bool(allow_custom),
        "probe_timeout_sec": _number_setting(cfg, "ffmpeg", "probe_timeout_sec", minimum=0.1),
        "stop_grace_sec": _number_setting(cfg, "ffmpeg", "stop_grace_sec", minimum=0.0),
        "chunk_bytes": int(_number_setting(cfg, "ffmpeg", "chunk_bytes", minimum=1)),
    }


def _empty_mapping() -> MutableMapping[str, Any]:
    return CommentedMap()


def _convert_to_round_trip(value: Any) -> Any:
    if isinstance(value, (CommentedMap, CommentedSeq)):
        return value
    if isinstance(value, Mapping) and not isinstance(value, (str, bytes)):
        converted = CommentedMap()
        for key, sub_value in value.items():
            converted[key] = _convert_to_round_trip(sub_value)
        return converted
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        converted_seq = CommentedSeq()
        for item in value:
            converted_seq.append(_convert_to_round_trip(item))
        return converted_seq
    return copy.deepcopy(value)


def _replace_mapping(
    target: MutableMapping[str, Any],
    updates: Mapping[str, Any],
    *,
    prune: bool,
) -> None:
    if prune:
        for existing_key in list(target.keys()):
            if existing_key not in updates:
                del target[existing_key]
    for key, value in updates.items():
        if isinstance(value, Mapping) and not isinstance(value, (str, bytes)):
            existing = target.get(key)
            if isinstance(existing, MutableMapping):
                _replace_mapping(existing, value, prune=prune)
            else:
                target[key] = _convert_to_round_trip(value)
        elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            target[key] = _convert_to_round_trip(value)
        else:
            target[key] = copy.deepcopy(value)


def _load_yaml_for_update(path: Path) -> MutableMapping[str, Any]:
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = _ROUND_TRIP_YAML.load(handle)
        except Exception as exc:
            raise ConfigPersistenceError(f"Unable to read configuration: {exc}") from exc
        if isinstance(data, MutableMapping):
            return data
    return _empty_mapping()


def _dump_yaml(path: Path, payload: MutableMapping[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to create configuration directory: {exc}") from exc
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            _ROUND_TRIP_YAML.dump(payload, handle)
        tmp_path.replace(path)
    except Exception as exc:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc
