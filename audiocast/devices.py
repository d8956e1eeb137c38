"""Enumerate capture devices by probing ffmpeg (or the platform sound server).

Each capture driver prints its device list in a different shape, so every
driver has a pure line classifier. Classifiers tag each line as ignored, a
device entry, a section marker, or a ``key: value`` field; the fold helpers
turn those tags into :class:`DeviceDescriptor` values.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import re
import sys
from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence

log = logging.getLogger("device_directory")

LOOPBACK_KEYWORDS: tuple[str, ...] = (
    "blackhole",
    "loopback",
    "stereo mix",
    "monitor",
    "soundflower",
    "what u hear",
    "cable output",
)

# "[dshow @ 000001c1f0a8d6c0] " / "[AVFoundation indev @ 0x7f8] "
_LOG_PREFIX = re.compile(r"^\s*\[[^\]]*@\s*[^\]]*\]\s?")

_DSHOW_SECTION = re.compile(r"DirectShow\s+(?P<kind>audio|video)\s+devices", re.IGNORECASE)
_DSHOW_ENTRY = re.compile(
    r'^\s*"(?P<name>[^"]*)"\s*(?:\((?P<kind>[a-z, ]+)\))?\s*$',
    re.IGNORECASE,
)

_AVF_SECTION = re.compile(r"AVFoundation\s+(?P<kind>audio|video)\s+devices:", re.IGNORECASE)
_AVF_ENTRY = re.compile(r"^\s*\[(?P<index>\d+)\]\s*(?P<name>.*?)\s*$")

_PULSE_SECTION = re.compile(r"^(?P<kind>Source|Sink)\s+#(?P<index>\d+)\s*$", re.IGNORECASE)
_PULSE_FIELD = re.compile(r"^\s+(?P<key>Name|Description):\s*(?P<value>.*?)\s*$")

_ALSA_DEVICE_LINE = re.compile(
    r"card\s+(?P<card_index>\d+):\s*"
    r"(?P<card_id>[^\[]+)\[(?P<card_name>[^\]]+)\],\s*"
    r"device\s+(?P<device_index>\d+):\s*"
    r"(?P<device_id>[^\[]+)\[(?P<device_name>[^\]]+)\]",
    re.IGNORECASE,
)


class DeviceListingFailed(Exception):
    """Raised when no probe command could produce a device listing."""


class LineKind(enum.Enum):
    IGNORED = "ignored"
    DEVICE = "device"
    SECTION = "section"
    FIELD = "field"


@dataclass(frozen=True)
class ProbeLine:
    kind: LineKind
    value: str = ""
    label: str = ""
    # section name for SECTION lines, or the section a DEVICE line declares
    # inline (empty when it inherits the enclosing section); field key for FIELD
    section: str = ""


IGNORED = ProbeLine(LineKind.IGNORED)


@dataclass(frozen=True)
class DeviceDescriptor:
    value: str
    label: str

    def as_dict(self) -> dict[str, str]:
        return {"value": self.value, "label": self.label}


@dataclass(frozen=True)
class CaptureDriver:
    name: str
    default_source: str
    probe_commands: tuple[tuple[str, ...], ...]
    parser: Callable[[str], List[DeviceDescriptor]]

    def probe_argv(self, ffmpeg_binary: str) -> list[list[str]]:
        return [
            [ffmpeg_binary if token == "{ffmpeg}" else token for token in command]
            for command in self.probe_commands
        ]


def _strip_log_prefix(line: str) -> str:
    return _LOG_PREFIX.sub("", line, count=1)


def classify_dshow_line(line: str) -> ProbeLine:
    text = _strip_log_prefix(line)
    if "alternative name" in text.lower():
        return IGNORED
    section = _DSHOW_SECTION.search(text)
    if section:
        return ProbeLine(LineKind.SECTION, section=section.group("kind").lower())
    match = _DSHOW_ENTRY.match(text)
    if not match:
        return IGNORED
    name = match.group("name").strip()
    kind = (match.group("kind") or "").lower()
    if kind and "audio" in kind:
        kind = "audio"
    elif kind:
        kind = "video"
    return ProbeLine(LineKind.DEVICE, value=f"audio={name}" if name else "", label=name, section=kind)


def classify_avfoundation_line(line: str) -> ProbeLine:
    text = _strip_log_prefix(line)
    section = _AVF_SECTION.search(text)
    if section:
        return ProbeLine(LineKind.SECTION, section=section.group("kind").lower())
    match = _AVF_ENTRY.match(text)
    if not match:
        return IGNORED
    return ProbeLine(
        LineKind.DEVICE,
        value=f":{match.group('index')}",
        label=match.group("name"),
    )


def classify_pulse_line(line: str) -> ProbeLine:
    section = _PULSE_SECTION.match(line.strip())
    if section:
        return ProbeLine(LineKind.SECTION, section=section.group("kind").lower())
    field = _PULSE_FIELD.match(line)
    if field:
        return ProbeLine(LineKind.FIELD, value=field.group("value"), section=field.group("key").lower())
    return IGNORED


def classify_alsa_line(line: str) -> ProbeLine:
    match = _ALSA_DEVICE_LINE.search(line)
    if not match:
        return IGNORED
    card_id = match.group("card_id").strip()
    card_name = match.group("card_name").strip() or card_id
    device_name = match.group("device_name").strip() or match.group("device_id").strip()
    if not card_id:
        return IGNORED
    identifier = f"hw:CARD={card_id},DEV={int(match.group('device_index'))}"
    return ProbeLine(
        LineKind.DEVICE,
        value=identifier,
        label=f"{card_name}: {device_name} ({identifier})",
        section="audio",
    )


def _fold_sectioned(
    lines: Iterable[ProbeLine],
    *,
    wanted: str = "audio",
    default_section: str = "",
) -> List[DeviceDescriptor]:
    devices: List[DeviceDescriptor] = []
    current = default_section
    for entry in lines:
        if entry.kind is LineKind.SECTION:
            current = entry.section
            continue
        if entry.kind is not LineKind.DEVICE:
            continue
        if (entry.section or current) != wanted:
            continue
        if not entry.value.strip() or not entry.label.strip():
            continue
        devices.append(DeviceDescriptor(value=entry.value, label=entry.label))
    return devices


def _fold_pulse(lines: Iterable[ProbeLine]) -> List[DeviceDescriptor]:
    devices: List[DeviceDescriptor] = []
    section: str | None = None
    fields: dict[str, str] = {}

    def _flush() -> None:
        name = fields.get("name", "").strip()
        if section is None or not name:
            return
        description = fields.get("description", "").strip() or name
        if section == "sink":
            devices.append(
                DeviceDescriptor(value=f"{name}.monitor", label=f"Monitor of {description}")
            )
        else:
            devices.append(DeviceDescriptor(value=name, label=description))

    for entry in lines:
        if entry.kind is LineKind.SECTION:
            _flush()
            section = entry.section
            fields = {}
        elif entry.kind is LineKind.FIELD and section is not None:
            fields.setdefault(entry.section, entry.value)
    _flush()
    return devices


def parse_dshow_listing(output: str) -> List[DeviceDescriptor]:
    return _fold_sectioned(classify_dshow_line(line) for line in output.splitlines())


def parse_avfoundation_listing(output: str) -> List[DeviceDescriptor]:
    return _fold_sectioned(classify_avfoundation_line(line) for line in output.splitlines())


def parse_pulse_listing(output: str) -> List[DeviceDescriptor]:
    return _fold_pulse(classify_pulse_line(line) for line in output.splitlines())


def parse_alsa_listing(output: str) -> List[DeviceDescriptor]:
    return _fold_sectioned(classify_alsa_line(line) for line in output.splitlines())


DRIVERS: dict[str, CaptureDriver] = {
    "dshow": CaptureDriver(
        name="dshow",
        default_source="audio=Stereo Mix (Realtek(R) Audio)",
        probe_commands=(
            ("{ffmpeg}", "-hide_banner", "-list_devices", "true", "-f", "dshow", "-i", "dummy"),
        ),
        parser=parse_dshow_listing,
    ),
    "avfoundation": CaptureDriver(
        name="avfoundation",
        default_source=":0",
        probe_commands=(
            ("{ffmpeg}", "-hide_banner", "-f", "avfoundation", "-list_devices", "true", "-i", ""),
        ),
        parser=parse_avfoundation_listing,
    ),
    "pulse": CaptureDriver(
        name="pulse",
        default_source="default",
        probe_commands=(
            ("pactl", "list", "sources"),
            ("pactl", "list", "sinks"),
        ),
        parser=parse_pulse_listing,
    ),
    "alsa": CaptureDriver(
        name="alsa",
        default_source="default",
        probe_commands=(("arecord", "-l"),),
        parser=parse_alsa_listing,
    ),
}


def platform_driver_name(platform: str | None = None) -> str:
    platform = platform or sys.platform
    if platform.startswith("win"):
        return "dshow"
    if platform == "darwin":
        return "avfoundation"
    return "pulse"


def resolve_driver(name: str | None = None, *, platform: str | None = None) -> CaptureDriver:
    """Return the named driver, or the platform's default driver."""

    key = (name or "").strip().lower()
    if key and key in DRIVERS:
        return DRIVERS[key]
    fallback = platform_driver_name(platform)
    if key:
        log.warning("Unknown capture driver %r; using %s", key, fallback)
    return DRIVERS[fallback]


def find_loopback(
    devices: Sequence[DeviceDescriptor],
    keywords: Sequence[str] = LOOPBACK_KEYWORDS,
) -> DeviceDescriptor | None:
    """First device whose label names a loopback/monitor source, if any."""

    for device in devices:
        label = device.label.lower()
        if any(keyword in label for keyword in keywords):
            return device
    return None


class DeviceDirectory:
    """Lists capture devices for one driver. Never touches stream state."""

    def __init__(
        self,
        driver: CaptureDriver,
        *,
        ffmpeg_binary: str = "ffmpeg",
        timeout: float = 5.0,
    ) -> None:
        self.driver = driver
        self.ffmpeg_binary = ffmpeg_binary
        self.timeout = timeout

    @staticmethod
    async def _kill_listing(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
        await asyncio.shield(proc.wait())

    async def _run_probe(self, argv: Sequence[str]) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DeviceListingFailed(f"Unable to launch {argv[0]}: {exc}") from exc

        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            await self._kill_listing(proc)
            raise DeviceListingFailed(
                f"{argv[0]} probe timed out after {self.timeout:.1f}s"
            ) from exc
        except BaseException:
            # Cancelled by the caller: the listing process must not outlive it.
            await self._kill_listing(proc)
            raise

        # ffmpeg's list mode exits non-zero; only the text matters.
        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        return f"{stdout}\n{stderr}"

    async def list_devices(self, *, include_default: bool = True) -> List[DeviceDescriptor]:
        seen: set[str] = set()
        discovered: List[DeviceDescriptor] = []
        failures: list[DeviceListingFailed] = []
        probes = self.driver.probe_argv(self.ffmpeg_binary)
        for argv in probes:
            try:
                output = await self._run_probe(argv)
            except DeviceListingFailed as exc:
                log.warning("Device probe failed: %s", exc)
                failures.append(exc)
                continue
            for device in self.driver.parser(output):
                if device.value in seen:
                    continue
                seen.add(device.value)
                discovered.append(device)

        if failures and len(failures) == len(probes):
            raise failures[0]

        log.info("Found %d %s capture device(s)", len(discovered), self.driver.name)
        if not discovered and include_default:
            return [DeviceDescriptor(value=self.driver.default_source, label="Default")]
        return discovered


__all__ = [
    "CaptureDriver",
    "DRIVERS",
    "DeviceDescriptor",
    "DeviceDirectory",
    "DeviceListingFailed",
    "LOOPBACK_KEYWORDS",
    "LineKind",
    "ProbeLine",
    "find_loopback",
    "resolve_driver",
]
