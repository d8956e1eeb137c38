"""
Stream lifecycle: one ffmpeg process per /stream request.

Lifecycle of a session:
  STARTING  -> response headers sent, ffmpeg being spawned
  STREAMING -> ffmpeg stdout forwarded to the client chunk by chunk
  DRAINING  -> client left or ffmpeg exited; reaping the process
  CLOSED    -> process reaped, response finished

A client disconnect cancels the aiohttp handler task (the app runner is
created with handler_cancellation=True). Cancellation, a failed write, or
any other error while streaming sends ffmpeg a single SIGINT; ffmpeg is
killed only if it ignores that for ``stop_grace`` seconds.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import re
import signal
import sys
import time
from typing import Any, Awaitable, Callable, Sequence

from aiohttp import web

from audiocast.capture_store import CaptureConfig

log = logging.getLogger("stream_session")
ffmpeg_log = logging.getLogger("stream_session.ffmpeg")

GENERIC_CONTENT_TYPE = "application/octet-stream"
FORMAT_CONTENT_TYPES: dict[str, str] = {
    "wav": "audio/wav",
    "adts": "audio/aac",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "opus": "audio/ogg",
    "webm": "audio/webm",
    "s16le": "audio/L16",
}

DEFAULT_CHUNK_BYTES = 4096
DEFAULT_STOP_GRACE_SECONDS = 3.0
STDERR_READ_BYTES = 1024
STDERR_DRAIN_TIMEOUT_SECONDS = 1.0

_LINE_SPLIT = re.compile(r"[\r\n]")

SpawnFunc = Callable[..., Awaitable[Any]]


class NoDeviceSelected(Exception):
    """Raised when a stream is requested before any device was chosen."""


class SubprocessLaunchFailure(Exception):
    """Raised when the capture process could not be started at all."""


class SessionState(enum.Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    DRAINING = "draining"
    CLOSED = "closed"


def resolve_content_type(args: Sequence[str]) -> str:
    """Content type for the output format named by the last ``-f`` token."""

    fmt: str | None = None
    for index, token in enumerate(args[:-1]):
        if token == "-f":
            fmt = args[index + 1]
    if not fmt:
        return GENERIC_CONTENT_TYPE
    return FORMAT_CONTENT_TYPES.get(fmt.strip().lower(), GENERIC_CONTENT_TYPE)


def split_diagnostic_lines(chunk: bytes, state: dict[str, str]) -> list[str]:
    """Split ffmpeg stderr into lines, carrying partial lines in ``state``.

    ffmpeg rewrites its progress line with carriage returns, so both ``\\r``
    and ``\\n`` end a line.
    """

    text = state.get("buffer", "") + chunk.decode("utf-8", errors="replace")
    parts = _LINE_SPLIT.split(text)
    state["buffer"] = parts.pop()
    return [part.strip() for part in parts if part.strip()]


def _log_diagnostic(line: str) -> None:
    if "error" in line.lower():
        ffmpeg_log.error("ffmpeg: %s", line)
    else:
        ffmpeg_log.debug("ffmpeg: %s", line)


class StreamSession:
    """Binds one ffmpeg process to one HTTP response."""

    def __init__(
        self,
        config: CaptureConfig,
        *,
        ffmpeg_binary: str = "ffmpeg",
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        stop_grace: float = DEFAULT_STOP_GRACE_SECONDS,
        spawn: SpawnFunc | None = None,
    ) -> None:
        if not config.selected_device:
            raise NoDeviceSelected("No device selected")
        self.args = list(config.invocation_args)
        self.content_type = resolve_content_type(self.args)
        self.ffmpeg_binary = ffmpeg_binary
        self.chunk_bytes = max(1, int(chunk_bytes))
        self.stop_grace = max(0.0, float(stop_grace))
        self.created_at = time.time()
        self.state = SessionState.STARTING
        self.bytes_sent = 0
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._proc: Any = None
        self._stderr_task: asyncio.Task | None = None
        self._interrupted = False

    @property
    def pid(self) -> int | None:
        return getattr(self._proc, "pid", None)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        log.debug("stream pid=%s %s -> %s", self.pid, self.state.value, state.value)
        self.state = state

    async def run(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": self.content_type,
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
        response.enable_chunked_encoding()
        await response.prepare(request)

        try:
            await self._start()
        except SubprocessLaunchFailure as exc:
            log.error("Stream aborted: %s", exc)
            self._set_state(SessionState.CLOSED)
            with contextlib.suppress(ConnectionResetError):
                await response.write_eof()
            return response

        client_gone = True
        try:
            client_gone = not await self._forward(response)
        finally:
            if client_gone:
                log.info("Client disconnected; stopping ffmpeg pid=%s", self.pid)
                self.interrupt()
            await self._close()

        if not client_gone:
            with contextlib.suppress(ConnectionResetError):
                await response.write_eof()
        return response

    async def _start(self) -> None:
        argv = [self.ffmpeg_binary, *self.args]
        log.info("Launching ffmpeg: %s", " ".join(argv))
        try:
            self._proc = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SubprocessLaunchFailure(f"Unable to launch {self.ffmpeg_binary}: {exc}") from exc
        if self._proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._pump_stderr(self._proc.stderr))
        self._set_state(SessionState.STREAMING)

    async def _forward(self, response: web.StreamResponse) -> bool:
        """Copy stdout to the client. False means the client went away."""

        stdout = self._proc.stdout
        while True:
            chunk = await stdout.read(self.chunk_bytes)
            if not chunk:
                return True
            try:
                await response.write(chunk)
            except ConnectionResetError:
                return False
            self.bytes_sent += len(chunk)

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        state = {"buffer": ""}
        while True:
            chunk = await stream.read(STDERR_READ_BYTES)
            if not chunk:
                break
            for line in split_diagnostic_lines(chunk, state):
                _log_diagnostic(line)
        tail = state["buffer"].strip()
        if tail:
            _log_diagnostic(tail)

    def interrupt(self) -> bool:
        """Ask ffmpeg to stop. Only the first call sends anything."""

        if self._interrupted:
            return False
        self._interrupted = True
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return False
        try:
            if sys.platform.startswith("win"):
                proc.terminate()
            else:
                proc.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        return True

    async def _close(self) -> None:
        self._set_state(SessionState.DRAINING)
        # A second cancellation (server shutdown) must not leave the process
        # half-reaped.
        reaper = asyncio.ensure_future(self._reap())
        await asyncio.shield(reaper)

    async def _reap(self) -> None:
        proc = self._proc
        try:
            try:
                returncode = await asyncio.wait_for(proc.wait(), timeout=self.stop_grace)
            except asyncio.TimeoutError:
                log.warning(
                    "ffmpeg pid=%s still running %.1fs after stop request; killing",
                    self.pid,
                    self.stop_grace,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                returncode = await proc.wait()

            if self._stderr_task is not None:
                try:
                    await asyncio.wait_for(self._stderr_task, timeout=STDERR_DRAIN_TIMEOUT_SECONDS)
                except asyncio.TimeoutError:
                    log.debug("ffmpeg stderr still open after exit; abandoning reader")

            elapsed = time.time() - self.created_at
            if self._interrupted or returncode == 0:
                log.info(
                    "ffmpeg pid=%s exited rc=%s after %.1fs (%d bytes sent)",
                    self.pid,
                    returncode,
                    elapsed,
                    self.bytes_sent,
                )
            else:
                log.warning(
                    "ffmpeg pid=%s exited unexpectedly rc=%s after %.1fs (%d bytes sent)",
                    self.pid,
                    returncode,
                    elapsed,
                    self.bytes_sent,
                )
        finally:
            self._set_state(SessionState.CLOSED)


async def begin_stream(
    request: web.Request,
    config: CaptureConfig,
    **options: Any,
) -> web.StreamResponse:
    """Stream ``config`` to ``request``; raises NoDeviceSelected before any spawn."""

    session = StreamSession(config, **options)
    return await session.run(request)
