#!/usr/bin/env python3
"""Supervise a command and interrupt it once our stdin is closed.

Usage: runner <program> [args...]

SSH gives us no deployed way to signal a remote command, so the orchestrator
closes the command's stdin instead. This helper turns that end-of-input into
SIGINT for the supervised program's whole process group, which also reaches
children it started through sudo. The signal is repeated every 100 ms until
the program exits.

The file is copied verbatim to the test hosts and must only use the standard
library.
"""
import os
import signal
import subprocess
import sys
import threading
import time

POLL_INTERVAL_S = 0.1


def _watch_stdin(closed: threading.Event) -> None:
    try:
        sys.stdin.buffer.read()
    finally:
        closed.set()


def supervise(argv) -> int:
    child = subprocess.Popen(argv, stdin=subprocess.PIPE, start_new_session=True)
    closed = threading.Event()
    threading.Thread(target=_watch_stdin, args=(closed,), daemon=True).start()

    while child.poll() is None:
        if closed.is_set():
            try:
                os.killpg(os.getpgid(child.pid), signal.SIGINT)
            except ProcessLookupError:
                # exited between poll() and the signal
                pass
        time.sleep(POLL_INTERVAL_S)

    rc = child.returncode
    return 128 - rc if rc < 0 else rc


def main() -> None:
    if len(sys.argv) < 2:
        print("missing program to start")
        sys.exit(255)
    sys.exit(supervise(sys.argv[1:]))


if __name__ == "__main__":
    main()
