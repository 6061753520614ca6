"""
Bounded polling primitives.

Every wait here sleeps through a CancelToken, so a shutdown signal ends the
current sleep immediately instead of after the next interval.
"""
from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional, TypeVar

from antnet.errors import ShutdownRequested, WaitTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Poll interval floor; anything smaller is raised to this.
MIN_POLL_INTERVAL = 0.05


class CancelToken:
    """Set once from a signal handler; every cancellable sleep observes it."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "shutdown requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ShutdownRequested(self.reason or "shutdown requested")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``; raise ShutdownRequested as soon as cancelled."""
        if seconds > 0:
            self._event.wait(seconds)
        self.raise_if_cancelled()


def path_ready(path: Path) -> bool:
    """Readiness check for a file-based signal. Pure: no side effects."""
    return Path(path).exists()


def wait_until(
    check: Callable[[], T],
    *,
    timeout: float,
    interval: float,
    what: str,
    cancel: Optional[CancelToken] = None,
    on_tick: Optional[Callable[[], None]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Poll ``check`` until it returns something truthy and return that value.

    ``on_tick`` runs before every check and may raise to abort the wait early
    (used to fail fast when a child the wait depends on has died).
    Raises WaitTimeoutError once ``timeout`` seconds have passed.
    """
    interval = max(interval, MIN_POLL_INTERVAL)
    cancel = cancel or CancelToken()
    start = clock()
    ticks = 0
    while True:
        cancel.raise_if_cancelled()
        if on_tick is not None:
            on_tick()
        result = check()
        if result:
            return result
        elapsed = clock() - start
        if elapsed >= timeout:
            raise WaitTimeoutError(what, elapsed, timeout)
        ticks += 1
        if ticks % max(int(10 / interval), 1) == 0:
            logger.info(f"⏳ Still waiting for {what}... ({elapsed:.0f}s)")
        cancel.sleep(min(interval, timeout - elapsed))


def wait_for_path(
    path: Path,
    timeout: float,
    interval: float = 0.2,
    cancel: Optional[CancelToken] = None,
    on_tick: Optional[Callable[[], None]] = None,
) -> Path:
    """Return ``path`` once it exists; WaitTimeoutError after ``timeout`` seconds."""
    path = Path(path)
    logger.info(f"Waiting for '{path}' to appear (timeout: {timeout:g}s)...")
    wait_until(
        lambda: path_ready(path),
        timeout=timeout,
        interval=interval,
        what=f"'{path}'",
        cancel=cancel,
        on_tick=on_tick,
    )
    logger.info(f"File '{path}' found")
    return path
