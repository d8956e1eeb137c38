"""Persisted stream state: which device to capture and how to encode it.

The record is a small YAML document::

    selected_device: null
    invocation_args:
      - -f
      - dshow
      - -i
      - audio=Stereo Mix (Realtek(R) Audio)
      - ...encoding tokens...
      - '-'

``invocation_args`` always has the shape ``-f <driver> -i <source>
<encoding...> -`` so the input source and the encoding tokens can be swapped
independently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import yaml

from audiocast.config import (
    ConfigPersistenceError,
    _dump_yaml,
    _load_yaml_for_update,
    _replace_mapping,
)
from audiocast.devices import CaptureDriver

log = logging.getLogger("capture_store")

OUTPUT_TOKEN = "-"

ENCODING_PRESETS: dict[str, tuple[str, ...]] = {
    "wav": ("-ac", "2", "-ar", "44100", "-c:a", "pcm_s16le", "-f", "wav"),
    "aac": ("-ac", "2", "-ar", "44100", "-c:a", "aac", "-b:a", "192k", "-f", "adts"),
    "flac": ("-ac", "2", "-ar", "44100", "-c:a", "flac", "-f", "flac"),
    "mp3": ("-ac", "2", "-ar", "44100", "-c:a", "libmp3lame", "-b:a", "192k", "-f", "mp3"),
}
DEFAULT_ENCODING = "wav"


@dataclass
class CaptureConfig:
    selected_device: Optional[str] = None
    invocation_args: list[str] = field(default_factory=list)

    def input_source(self) -> Optional[str]:
        """Token following ``-i``, if the argument vector has one."""
        try:
            index = self.invocation_args.index("-i")
        except ValueError:
            return None
        if index + 1 >= len(self.invocation_args):
            return None
        return self.invocation_args[index + 1]

    def encoding_tokens(self) -> list[str]:
        """Tokens between the input source and the trailing output token."""
        try:
            start = self.invocation_args.index("-i") + 2
        except ValueError:
            return []
        tail = self.invocation_args[start:]
        if tail and tail[-1] == OUTPUT_TOKEN:
            tail = tail[:-1]
        return list(tail)

    def as_dict(self) -> dict[str, Any]:
        return {
            "selected_device": self.selected_device,
            "invocation_args": list(self.invocation_args),
        }


def build_invocation_args(driver: str, source: str, encoding: Sequence[str]) -> list[str]:
    return ["-f", driver, "-i", source, *encoding, OUTPUT_TOKEN]


def normalize_encoding_tokens(tokens: Sequence[Any]) -> list[str]:
    """Validate caller-supplied encoding tokens.

    Raises ``ValueError`` when the tokens would break the ``-i <source>``
    layout or leave nothing to encode with.
    """

    cleaned = [str(token) for token in tokens if str(token).strip()]
    while cleaned and cleaned[-1] == OUTPUT_TOKEN:
        cleaned.pop()
    if not cleaned:
        raise ValueError("Encoding arguments must not be empty")
    if "-i" in cleaned:
        raise ValueError("Encoding arguments must not select an input (-i)")
    return cleaned


class CaptureStore:
    """Load/save the stream state record at ``path``.

    Mutations hold ``_lock`` across their load-modify-save sequence since
    file I/O runs off-loop and yields in the middle.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        driver: CaptureDriver,
        default_source: str | None = None,
        default_encoding: str = DEFAULT_ENCODING,
    ) -> None:
        self.path = Path(path)
        self.driver = driver
        self.default_source = default_source or driver.default_source
        if default_encoding not in ENCODING_PRESETS:
            log.warning("Unknown encoding preset %r; using %s", default_encoding, DEFAULT_ENCODING)
            default_encoding = DEFAULT_ENCODING
        self.default_encoding = default_encoding
        self._lock = asyncio.Lock()

    def default_config(self) -> CaptureConfig:
        return CaptureConfig(
            selected_device=None,
            invocation_args=build_invocation_args(
                self.driver.name,
                self.default_source,
                ENCODING_PRESETS[self.default_encoding],
            ),
        )

    def _read(self) -> CaptureConfig | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigPersistenceError(f"Unable to read stream state: {exc}") from exc
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ConfigPersistenceError("Stream state root must be a mapping")
        return self._from_mapping(payload)

    def _from_mapping(self, payload: Mapping[str, Any]) -> CaptureConfig:
        default = self.default_config()
        selected = payload.get("selected_device")
        if selected is not None:
            selected = str(selected).strip() or None

        raw_args = payload.get("invocation_args")
        if isinstance(raw_args, (list, tuple)):
            args = [str(token) for token in raw_args if token is not None]
        else:
            args = list(default.invocation_args)
            if selected:
                args = self._with_source(args, selected)
        return CaptureConfig(selected_device=selected, invocation_args=args)

    def _write(self, config: CaptureConfig) -> None:
        document = _load_yaml_for_update(self.path)
        _replace_mapping(document, config.as_dict(), prune=True)
        _dump_yaml(self.path, document)

    def _delete(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ConfigPersistenceError(f"Unable to remove stream state: {exc}") from exc

    async def _load_unlocked(self) -> CaptureConfig:
        config = await asyncio.to_thread(self._read)
        if config is None:
            config = self.default_config()
            await asyncio.to_thread(self._write, config)
            log.info("Created default stream state at %s", self.path)
        return config

    async def load(self) -> CaptureConfig:
        async with self._lock:
            return await self._load_unlocked()

    async def save(self, config: CaptureConfig) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, config)

    def _with_source(self, args: list[str], source: str) -> list[str]:
        if "-i" in args and args.index("-i") + 1 < len(args):
            updated = list(args)
            updated[updated.index("-i") + 1] = source
            return updated
        log.warning("Stream arguments lack an input source; rebuilding from defaults")
        encoding = CaptureConfig(invocation_args=list(args)).encoding_tokens()
        if not encoding:
            encoding = list(ENCODING_PRESETS[self.default_encoding])
        return build_invocation_args(self.driver.name, source, encoding)

    async def set_device(self, value: str) -> CaptureConfig:
        value = value.strip()
        if not value:
            raise ValueError("Device value must not be empty")
        async with self._lock:
            current = await self._load_unlocked()
            updated = CaptureConfig(
                selected_device=value,
                invocation_args=self._with_source(current.invocation_args, value),
            )
            await asyncio.to_thread(self._write, updated)
        log.info("Selected capture device %s", value)
        return updated

    async def set_encoding(self, tokens: Sequence[Any]) -> CaptureConfig:
        encoding = normalize_encoding_tokens(tokens)
        async with self._lock:
            current = await self._load_unlocked()
            args = current.invocation_args
            if "-i" in args and args.index("-i") + 1 < len(args):
                leading = args[: args.index("-i") + 2]
                updated_args = [*leading, *encoding, OUTPUT_TOKEN]
            else:
                source = current.selected_device or self.default_source
                updated_args = build_invocation_args(self.driver.name, source, encoding)
            updated = CaptureConfig(
                selected_device=current.selected_device,
                invocation_args=updated_args,
            )
            await asyncio.to_thread(self._write, updated)
        log.info("Updated encoding arguments: %s", " ".join(encoding))
        return updated

    async def set_preset(self, name: str) -> CaptureConfig:
        key = name.strip().lower()
        if key not in ENCODING_PRESETS:
            raise ValueError(f"Unknown encoding preset: {name}")
        return await self.set_encoding(ENCODING_PRESETS[key])

    async def reset(self) -> CaptureConfig:
        async with self._lock:
            await asyncio.to_thread(self._delete)
            config = self.default_config()
            await asyncio.to_thread(self._write, config)
        log.info("Reset stream state at %s", self.path)
        return config
