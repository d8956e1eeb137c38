#!/usr/bin/env python3
"""
Development launcher for audiocast.

- Starts the web streamer in a background thread
- Press q (or Ctrl-C) to stop the server and exit
"""

import argparse
import os
import signal
import sys
import termios
import threading
import time
import tty

from audiocast.config import get_cfg
from audiocast.web_streamer import _resolve_bind, start_web_streamer_in_thread


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.quit_requested = threading.Event()

    def run(self):
        while not self.quit_requested.is_set():
            ch = os.read(self.fd, 1)
            if not ch:
                continue
            if ch in (b"q", b"Q"):
                self.quit_requested.set()
            elif ch == b"\x03":  # Ctrl-C
                os.kill(os.getpid(), signal.SIGINT)

    def restore(self):
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)


def main():
    parser = argparse.ArgumentParser(description="Run audiocast in the foreground.")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    host, port = _resolve_bind(get_cfg())
    host = args.host or host
    port = args.port or port

    try:
        web_streamer = start_web_streamer_in_thread(
            host=host,
            port=port,
            access_log=False,
            log_level=args.log_level,
        )
    except RuntimeError as exc:
        print(f"[dev] {exc}")
        return 1
    print(f"[dev] Streaming on http://{host}:{port}/ (q or Ctrl-C to exit)")

    watcher = KeyWatcher() if sys.stdin.isatty() else None
    if watcher is not None:
        watcher.start()
    try:
        while watcher is None or not watcher.quit_requested.is_set():
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        print("[dev] Stopping web_streamer ...")
        web_streamer.stop()
        # Restore terminal mode only after the server is down
        if watcher is not None:
            watcher.restore()
    print("[dev] Exiting dev mode")
    return 0


if __name__ == "__main__":
    sys.exit(main())
