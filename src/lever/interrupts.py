"""Cooperative cancellation for long-running runs."""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from typing import Iterator

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Flag set by a signal handler and polled at run checkpoints."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __call__(self) -> bool:
        return self._event.is_set()

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` when cancelled meanwhile."""
        if seconds <= 0:
            return self.cancelled
        return self._event.wait(seconds)


@contextmanager
def signal_handlers(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT and SIGTERM to ``token`` for the duration of the block.

    Handlers can only be installed from the main thread; elsewhere the block
    runs without them.
    """
    installed = False
    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        LOGGER.warning("Received %s; finishing the current step before stopping.", name)
        token.cancel(name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        installed = True
    except ValueError:
        LOGGER.debug("Signal handlers unavailable outside the main thread.")

    try:
        yield token
    finally:
        if installed:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def wait_for_process(process: subprocess.Popen, token: CancellationToken | None, *, poll_interval: float = 0.1) -> int:
    """Wait for ``process``; terminate it and return 130 when ``token`` fires."""
    while True:
        if token is not None and token.cancelled:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            return 130
        code = process.poll()
        if code is not None:
            return code
        time.sleep(poll_interval)


__all__ = ["CancellationToken", "signal_handlers", "wait_for_process"]
