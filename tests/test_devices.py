from __future__ import annotations

import asyncio
import os

import pytest

from audiocast import devices
from audiocast.devices import (
    DRIVERS,
    CaptureDriver,
    DeviceDescriptor,
    DeviceDirectory,
    DeviceListingFailed,
    LineKind,
)

from conftest import write_fake_executable

DSHOW_LISTING = """\
[dshow @ 0000020f4d1c8c40] DirectShow video devices (some may be both video and audio devices)
[dshow @ 0000020f4d1c8c40]  "Integrated Camera"
[dshow @ 0000020f4d1c8c40]     Alternative name "@device_pnp_\\\\?\\usb#vid_04f2"
[dshow @ 0000020f4d1c8c40] DirectShow audio devices
[dshow @ 0000020f4d1c8c40]  "Microphone (Realtek(R) Audio)"
[dshow @ 0000020f4d1c8c40]     Alternative name "@device_cm_{33D9A762}\\wave_{A1B2}"
[dshow @ 0000020f4d1c8c40]  "Stereo Mix (Realtek(R) Audio)"
dummy: Immediate exit requested
"""

DSHOW_INLINE_LISTING = """\
[dshow @ 000001c1f0a8d6c0] "OBS Virtual Camera" (video)
[dshow @ 000001c1f0a8d6c0]   Alternative name "@device_sw_{860BB310}"
[dshow @ 000001c1f0a8d6c0] "CABLE Output (VB-Audio Virtual Cable)" (audio)
[dshow @ 000001c1f0a8d6c0]   Alternative name "@device_cm_{33D9A762}"
[dshow @ 000001c1f0a8d6c0] "" (audio)
"""

AVFOUNDATION_LISTING = """\
[AVFoundation indev @ 0x7f9e1c504a40] AVFoundation video devices:
[AVFoundation indev @ 0x7f9e1c504a40] [0] FaceTime HD Camera
[AVFoundation indev @ 0x7f9e1c504a40] [1] Capture screen 0
[AVFoundation indev @ 0x7f9e1c504a40] AVFoundation audio devices:
[AVFoundation indev @ 0x7f9e1c504a40] [0] MacBook Pro Microphone
[AVFoundation indev @ 0x7f9e1c504a40] [1] BlackHole 2ch
: Input/output error
"""

PULSE_SOURCES = """\
Source #0
\tState: SUSPENDED
\tName: alsa_output.pci-0000_00_1f.3.analog-stereo.monitor
\tDescription: Monitor of Built-in Audio Analog Stereo
\tDriver: module-alsa-card.c
\tProperties:
\t\tdevice.description = "Built-in Audio"
Source #1
\tState: RUNNING
\tName: alsa_input.pci-0000_00_1f.3.analog-stereo
\tDescription: Built-in Audio Analog Stereo
"""

PULSE_SINKS = """\
Sink #0
\tName: alsa_output.pci-0000_00_1f.3.analog-stereo
\tDescription: Built-in Audio Analog Stereo
Sink #1
\tName: bluez_sink.00_11_22
"""

ALSA_LISTING = """\
**** List of CAPTURE Hardware Devices ****
card 1: Device [USB Audio Device], device 0: USB Audio [USB Audio]
  Subdevices: 1/1
  Subdevice #0: subdevice #0
card 2: sndrpihifiberry [snd_rpi_hifiberry_dacplusadc], device 0: HiFiBerry DAC+ADC HiFi multicodec-0 [HiFiBerry DAC+ADC HiFi multicodec-0]
"""


def test_dshow_listing_keeps_audio_section_only():
    parsed = devices.parse_dshow_listing(DSHOW_LISTING)

    assert [d.value for d in parsed] == [
        "audio=Microphone (Realtek(R) Audio)",
        "audio=Stereo Mix (Realtek(R) Audio)",
    ]
    assert parsed[0].label == "Microphone (Realtek(R) Audio)"


def test_dshow_inline_kind_and_blank_names():
    parsed = devices.parse_dshow_listing(DSHOW_INLINE_LISTING)

    assert parsed == [
        DeviceDescriptor(
            value="audio=CABLE Output (VB-Audio Virtual Cable)",
            label="CABLE Output (VB-Audio Virtual Cable)",
        )
    ]


def test_classifier_tags_lines():
    assert devices.classify_dshow_line('[dshow @ 1]  Alternative name "@x"').kind is LineKind.IGNORED
    assert devices.classify_dshow_line("[dshow @ 1] DirectShow audio devices").section == "audio"
    assert devices.classify_avfoundation_line("garbage").kind is LineKind.IGNORED
    field = devices.classify_pulse_line("\tName: foo")
    assert field.kind is LineKind.FIELD
    assert (field.section, field.value) == ("name", "foo")


def test_avfoundation_listing_uses_index_values():
    parsed = devices.parse_avfoundation_listing(AVFOUNDATION_LISTING)

    assert parsed == [
        DeviceDescriptor(value=":0", label="MacBook Pro Microphone"),
        DeviceDescriptor(value=":1", label="BlackHole 2ch"),
    ]


def test_pulse_sources_and_sink_monitors():
    sources = devices.parse_pulse_listing(PULSE_SOURCES)
    sinks = devices.parse_pulse_listing(PULSE_SINKS)

    assert [d.value for d in sources] == [
        "alsa_output.pci-0000_00_1f.3.analog-stereo.monitor",
        "alsa_input.pci-0000_00_1f.3.analog-stereo",
    ]
    assert sinks == [
        DeviceDescriptor(
            value="alsa_output.pci-0000_00_1f.3.analog-stereo.monitor",
            label="Monitor of Built-in Audio Analog Stereo",
        ),
        DeviceDescriptor(
            value="bluez_sink.00_11_22.monitor",
            label="Monitor of bluez_sink.00_11_22",
        ),
    ]


def test_alsa_listing_builds_hw_identifiers():
    parsed = devices.parse_alsa_listing(ALSA_LISTING)

    assert [d.value for d in parsed] == [
        "hw:CARD=Device,DEV=0",
        "hw:CARD=sndrpihifiberry,DEV=0",
    ]
    assert parsed[0].label == "USB Audio Device: USB Audio (hw:CARD=Device,DEV=0)"


def test_malformed_output_yields_nothing():
    noise = "ffmpeg version 6.0\n\n[in#0 @ 0x1] Error opening input\n\x00\x01"
    for driver in DRIVERS.values():
        assert driver.parser(noise) == []


def test_find_loopback_matches_keywords_case_insensitively():
    listed = [
        DeviceDescriptor(":0", "MacBook Pro Microphone"),
        DeviceDescriptor(":1", "BLACKHOLE 2ch"),
        DeviceDescriptor(":2", "Loopback Audio"),
    ]

    assert devices.find_loopback(listed) == listed[1]
    assert devices.find_loopback(listed[:1]) is None
    # Only labels are consulted
    assert devices.find_loopback([DeviceDescriptor("monitor", "Speakers")]) is None


def test_resolve_driver_falls_back_to_platform(caplog):
    assert devices.resolve_driver("ALSA").name == "alsa"
    assert devices.resolve_driver(None, platform="win32").name == "dshow"
    assert devices.resolve_driver("", platform="darwin").name == "avfoundation"
    assert devices.resolve_driver("oss", platform="linux").name == "pulse"
    assert "Unknown capture driver" in caplog.text


def test_listing_argv_substitutes_ffmpeg_binary():
    argv = DRIVERS["dshow"].probe_argv("/opt/ffmpeg")
    assert argv == [["/opt/ffmpeg", "-hide_banner", "-list_devices", "true", "-f", "dshow", "-i", "dummy"]]
    assert DRIVERS["pulse"].probe_argv("/opt/ffmpeg")[0][0] == "pactl"


@pytest.mark.asyncio
async def test_directory_reads_listing_from_stderr(tmp_path):
    script = write_fake_executable(
        tmp_path / "ffmpeg",
        "import sys\n"
        f"sys.stderr.write({DSHOW_LISTING!r})\n"
        "sys.exit(1)\n",
    )
    directory = DeviceDirectory(DRIVERS["dshow"], ffmpeg_binary=str(script), timeout=10.0)

    listed = await directory.list_devices()

    assert [d.label for d in listed] == [
        "Microphone (Realtek(R) Audio)",
        "Stereo Mix (Realtek(R) Audio)",
    ]


@pytest.mark.asyncio
async def test_directory_empty_listing_offers_default(tmp_path):
    script = write_fake_executable(tmp_path / "ffmpeg", "print('nothing here')\n")
    directory = DeviceDirectory(DRIVERS["avfoundation"], ffmpeg_binary=str(script), timeout=10.0)

    assert await directory.list_devices() == [DeviceDescriptor(value=":0", label="Default")]
    assert await directory.list_devices(include_default=False) == []


@pytest.mark.asyncio
async def test_directory_missing_binary_fails(tmp_path):
    directory = DeviceDirectory(DRIVERS["dshow"], ffmpeg_binary=str(tmp_path / "missing"))

    with pytest.raises(DeviceListingFailed):
        await directory.list_devices()


@pytest.mark.asyncio
async def test_directory_listing_timeout_fails(tmp_path):
    script = write_fake_executable(tmp_path / "ffmpeg", "import time\ntime.sleep(30)\n")
    directory = DeviceDirectory(DRIVERS["dshow"], ffmpeg_binary=str(script), timeout=0.5)

    with pytest.raises(DeviceListingFailed, match="timed out"):
        await directory.list_devices()


@pytest.mark.asyncio
async def test_cancelled_listing_kills_ffmpeg(tmp_path):
    pid_file = tmp_path / "ffmpeg.pid"
    script = write_fake_executable(
        tmp_path / "ffmpeg",
        "import os, pathlib, time\n"
        f"pathlib.Path({str(pid_file)!r}).write_text(str(os.getpid()))\n"
        "time.sleep(30)\n",
    )
    directory = DeviceDirectory(DRIVERS["dshow"], ffmpeg_binary=str(script), timeout=30.0)

    task = asyncio.create_task(directory.list_devices())
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    pid = int(pid_file.read_text())

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_directory_tolerates_one_failed_command_and_dedupes(tmp_path):
    script = write_fake_executable(
        tmp_path / "pactl",
        "import sys\n"
        f"sys.stdout.write({PULSE_SOURCES!r})\n"
        f"sys.stdout.write({PULSE_SINKS!r})\n",
    )
    driver = CaptureDriver(
        name="pulse",
        default_source="default",
        probe_commands=((str(script),), (str(tmp_path / "absent"),)),
        parser=devices.parse_pulse_listing,
    )

    listed = await DeviceDirectory(driver, timeout=10.0).list_devices()

    values = [d.value for d in listed]
    assert values == [
        "alsa_output.pci-0000_00_1f.3.analog-stereo.monitor",
        "alsa_input.pci-0000_00_1f.3.analog-stereo",
        "bluez_sink.00_11_22.monitor",
    ]
