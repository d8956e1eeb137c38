#!/usr/bin/env python3
"""
aiohttp web server for audiocast's live capture stream.

Behavior:
- Every GET /stream spawns its own ffmpeg capture process; the process is
  interrupted as soon as that client disconnects.
- Device and encoding choices persist in the stream state file and apply
  to the next stream request.

Endpoints:
  GET  /                     -> Dashboard HTML
  GET  /dashboard            -> Same as /
  GET  /stream               -> Live audio (400 when no device is selected)
  GET  /devices              -> JSON {devices: [{value, label}], selected}
  POST /set-device           -> Persist form field "device"; redirect to /
  POST /set-format           -> Apply an encoding preset ("format"); redirect to /
  POST /set-ffmpeg           -> Persist custom encoding args ("args"); 410 when disabled
  POST /select-system-audio  -> Pick a loopback/monitor device by label; 404 if none
  GET  /logs                 -> Recent log lines (text/plain)
  GET  /ffmpeg-args          -> Current encoding args (text/plain)
  POST /reset-config         -> Recreate the default stream state; redirect to /
  Static /static/*           -> Dashboard assets
  GET  /healthz              -> "ok"
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from aiohttp import web
from aiohttp.web import AppKey

from audiocast import webui
from audiocast.capture_store import DEFAULT_ENCODING, ENCODING_PRESETS, CaptureStore
from audiocast.config import (
    ConfigPersistenceError,
    ffmpeg_settings,
    get_cfg,
    reload_cfg,
    state_file_path,
)
from audiocast.devices import (
    DeviceDirectory,
    DeviceListingFailed,
    find_loopback,
    resolve_driver,
)
from audiocast.log_buffer import DEFAULT_CAPACITY, LOG_FORMAT, LogBuffer, LogBufferHandler
from audiocast.stream_session import NoDeviceSelected, begin_stream, resolve_content_type

# Only stream-state file I/O runs on the default executor; keep it small.
WEB_STREAMER_EXECUTOR_MAX_WORKERS = 2

CAPTURE_STORE_KEY: AppKey[CaptureStore] = web.AppKey("capture_store", CaptureStore)
DEVICE_DIRECTORY_KEY: AppKey[DeviceDirectory] = web.AppKey("device_directory", DeviceDirectory)
LOG_BUFFER_KEY: AppKey[LogBuffer] = web.AppKey("log_buffer", LogBuffer)
LOG_HANDLER_KEY: AppKey[LogBufferHandler] = web.AppKey("log_handler", LogBufferHandler)
FFMPEG_SETTINGS_KEY: AppKey[dict[str, Any]] = web.AppKey("ffmpeg_settings", dict)


def _buffer_capacity(cfg: dict[str, Any]) -> int:
    raw = cfg.get("logging", {}).get("buffer_lines", DEFAULT_CAPACITY)
    try:
        capacity = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_CAPACITY
    return capacity if capacity > 0 else DEFAULT_CAPACITY


def build_app(
    *,
    store: CaptureStore | None = None,
    directory: DeviceDirectory | None = None,
    log_buffer: LogBuffer | None = None,
) -> web.Application:
    log = logging.getLogger("web_streamer")
    cfg = get_cfg()
    ffmpeg_cfg = ffmpeg_settings(cfg)
    capture_cfg = cfg.get("capture", {})
    driver = resolve_driver(capture_cfg.get("driver"))

    if store is None:
        store = CaptureStore(
            state_file_path(cfg),
            driver=driver,
            default_source=str(capture_cfg.get("default_source") or "").strip() or None,
            default_encoding=str(capture_cfg.get("encoding") or DEFAULT_ENCODING).strip().lower(),
        )
    if directory is None:
        directory = DeviceDirectory(
            driver,
            ffmpeg_binary=ffmpeg_cfg["binary"],
            timeout=ffmpeg_cfg["probe_timeout_sec"],
        )
    if log_buffer is None:
        log_buffer = LogBuffer(_buffer_capacity(cfg))

    @web.middleware
    async def _persistence_error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except ConfigPersistenceError as exc:
            log.warning("Unable to persist stream state: %s", exc)
            return web.json_response(
                {"error": f"Unable to access stream configuration: {exc}"},
                status=500,
            )

    app = web.Application(middlewares=[_persistence_error_middleware])
    app[CAPTURE_STORE_KEY] = store
    app[DEVICE_DIRECTORY_KEY] = directory
    app[LOG_BUFFER_KEY] = log_buffer
    app[LOG_HANDLER_KEY] = LogBufferHandler(log_buffer)
    app[FFMPEG_SETTINGS_KEY] = ffmpeg_cfg

    async def _attach_log_buffer(app: web.Application) -> None:
        logging.getLogger().addHandler(app[LOG_HANDLER_KEY])
        log.info(
            "Stream state at %s (driver %s, ffmpeg %s)",
            store.path,
            store.driver.name,
            ffmpeg_cfg["binary"],
        )

    async def _detach_log_buffer(app: web.Application) -> None:
        logging.getLogger().removeHandler(app[LOG_HANDLER_KEY])

    app.on_startup.append(_attach_log_buffer)
    app.on_cleanup.append(_detach_log_buffer)

    async def dashboard(_: web.Request) -> web.Response:
        config = await store.load()
        html = webui.render_template(
            "dashboard.html",
            driver=store.driver.name,
            selected_device=config.selected_device,
            content_type=resolve_content_type(config.invocation_args),
            encoding_args=" ".join(config.encoding_tokens()),
            presets=sorted(ENCODING_PRESETS),
            allow_custom_args=ffmpeg_cfg["allow_custom_args"],
        )
        return web.Response(text=html, content_type="text/html")

    async def stream(request: web.Request) -> web.StreamResponse:
        config = await store.load()
        try:
            return await begin_stream(
                request,
                config,
                ffmpeg_binary=ffmpeg_cfg["binary"],
                chunk_bytes=ffmpeg_cfg["chunk_bytes"],
                stop_grace=ffmpeg_cfg["stop_grace_sec"],
            )
        except NoDeviceSelected:
            log.warning("Stream requested from %s with no device selected", request.remote)
            return web.Response(status=400, text="No device selected")

    async def devices_list(_: web.Request) -> web.Response:
        try:
            devices = await directory.list_devices()
        except DeviceListingFailed as exc:
            log.error("Unable to list capture devices: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)
        config = await store.load()
        return web.json_response(
            {
                "devices": [device.as_dict() for device in devices],
                "selected": config.selected_device,
            },
            headers={"Cache-Control": "no-store"},
        )

    async def set_device(request: web.Request) -> web.Response:
        data = await request.post()
        device = str(data.get("device", "")).strip()
        if not device:
            return web.Response(status=400, text="Missing form field: device")
        await store.set_device(device)
        raise web.HTTPFound("/")

    async def set_format(request: web.Request) -> web.Response:
        data = await request.post()
        preset = str(data.get("format", "")).strip()
        try:
            await store.set_preset(preset)
        except ValueError as exc:
            return web.Response(status=400, text=str(exc))
        raise web.HTTPFound("/")

    async def set_ffmpeg(request: web.Request) -> web.Response:
        if not ffmpeg_cfg["allow_custom_args"]:
            raise web.HTTPGone(text="Custom ffmpeg arguments are disabled")
        data = await request.post()
        raw = str(data.get("args", ""))
        try:
            tokens = shlex.split(raw)
            await store.set_encoding(tokens)
        except ValueError as exc:
            return web.Response(status=400, text=f"Invalid ffmpeg arguments: {exc}")
        raise web.HTTPFound("/")

    async def select_system_audio(_: web.Request) -> web.Response:
        try:
            devices = await directory.list_devices(include_default=False)
        except DeviceListingFailed as exc:
            log.error("Unable to list capture devices: %s", exc)
            return web.json_response({"error": str(exc)}, status=500)
        match = find_loopback(devices)
        if match is None:
            log.warning("No loopback/monitor device among %d device(s)", len(devices))
            return web.Response(status=404, text="No system audio device found")
        await store.set_device(match.value)
        log.info("Auto-selected system audio device %s (%s)", match.value, match.label)
        raise web.HTTPFound("/")

    async def logs(_: web.Request) -> web.Response:
        return web.Response(
            text=log_buffer.read_all(),
            content_type="text/plain",
            headers={"Cache-Control": "no-store"},
        )

    async def ffmpeg_args(_: web.Request) -> web.Response:
        config = await store.load()
        return web.Response(text=" ".join(config.encoding_tokens()), content_type="text/plain")

    async def reset_config(_: web.Request) -> web.Response:
        await store.reset()
        raise web.HTTPFound("/")

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok")

    app.router.add_get("/", dashboard)
    app.router.add_get("/dashboard", dashboard)
    app.router.add_get("/stream", stream)
    app.router.add_get("/devices", devices_list)
    app.router.add_post("/set-device", set_device)
    app.router.add_post("/set-format", set_format)
    app.router.add_post("/set-ffmpeg", set_ffmpeg)
    app.router.add_post("/select-system-audio", select_system_audio)
    app.router.add_get("/logs", logs)
    app.router.add_get("/ffmpeg-args", ffmpeg_args)
    app.router.add_post("/reset-config", reset_config)
    app.router.add_static("/static", webui.static_directory())
    app.router.add_get("/healthz", healthz)
    return app


def _configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    if get_cfg().get("logging", {}).get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)


class WebStreamerHandle:
    """Handle returned by start_web_streamer_in_thread(). Call stop() to cleanly shut down."""
    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def stop(self, timeout: float = 5.0):
        log = logging.getLogger("web_streamer")
        log.info("Stopping web_streamer ...")
        if self.loop.is_running():

            async def _cleanup():
                try:
                    await self.runner.cleanup()
                except Exception as e:
                    log.warning("Error during aiohttp runner cleanup: %r", e)

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("web_streamer stopped")


def start_web_streamer_in_thread(
    host: str = "0.0.0.0",
    port: int = 3000,
    *,
    access_log: bool = False,
    log_level: str = "INFO",
) -> WebStreamerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    _configure_logging(log_level)
    log = logging.getLogger("web_streamer")

    loop = asyncio.new_event_loop()
    executor = ThreadPoolExecutor(
        max_workers=WEB_STREAMER_EXECUTOR_MAX_WORKERS,
        thread_name_prefix="web_streamer_io",
    )
    runner_box = {}
    app_box = {}
    startup_error: list[BaseException] = []

    def _run():
        asyncio.set_event_loop(loop)
        loop.set_default_executor(executor)
        app = build_app()
        # handler_cancellation: a client disconnect cancels its /stream
        # handler, which is what stops that client's ffmpeg.
        runner = web.AppRunner(
            app,
            access_log=logging.getLogger("aiohttp.access") if access_log else None,
            handler_cancellation=True,
        )
        try:
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except OSError as exc:
            log.error("Unable to bind %s:%s: %s", host, port, exc)
            startup_error.append(exc)
            loop.run_until_complete(runner.cleanup())
            executor.shutdown(wait=False, cancel_futures=True)
            return
        runner_box["runner"] = runner
        app_box["app"] = app
        log.info("web_streamer started on %s:%s", host, port)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception as exc:
                log.warning("Error during final runner cleanup: %r", exc)
            executor.shutdown(wait=True, cancel_futures=True)

    t = threading.Thread(target=_run, name="web_streamer", daemon=True)
    t.start()

    while "runner" not in runner_box or "app" not in app_box:
        if startup_error:
            raise RuntimeError(f"web_streamer failed to start: {startup_error[0]}")
        time.sleep(0.05)

    return WebStreamerHandle(t, loop, runner_box["runner"], app_box["app"])


def _resolve_bind(cfg: dict[str, Any]) -> tuple[str, int]:
    settings = cfg.get("web_server", {})
    host = str(settings.get("listen_host") or "0.0.0.0")
    try:
        port = int(settings.get("listen_port") or 3000)
    except (TypeError, ValueError):
        port = 3000
    return host, port


def cli_main():
    parser = argparse.ArgumentParser(description="Live audio capture streamer (HTTP).")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = reload_cfg()
    _configure_logging(args.log_level)
    log = logging.getLogger("web_streamer")

    host_cfg, port_cfg = _resolve_bind(cfg)
    bind_host = args.host if args.host else host_cfg
    bind_port = args.port if args.port else port_cfg
    log.info(
        "Starting web_streamer on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )

    try:
        handle = start_web_streamer_in_thread(
            host=bind_host,
            port=bind_port,
            access_log=args.access_log,
            log_level=args.log_level,
        )
    except RuntimeError as exc:
        log.error("%s", exc)
        return 1
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
        return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
