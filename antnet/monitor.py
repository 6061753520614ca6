from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from antnet.errors import ProcessCrashError, ShutdownRequested
from antnet.process import ManagedProcess, ProcessGroup
from antnet.readiness import MIN_POLL_INTERVAL, CancelToken

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    MONITORING = "monitoring"
    ABORTING = "aborting"
    TERMINAL = "terminal"


class LivenessMonitor:
    """Steady-state watch over every tracked child.

    There is no restart policy: the first death tears everything down.
    ``run`` returns normally only when cancelled by a shutdown signal.
    """

    def __init__(
        self,
        processes: ProcessGroup,
        cancel: CancelToken,
        interval: float = 5.0,
        on_abort: Optional[Callable[[str], None]] = None,
    ):
        self.processes = processes
        self.cancel = cancel
        self.interval = max(interval, MIN_POLL_INTERVAL)
        self.on_abort = on_abort
        self.state = MonitorState.MONITORING
        self.abort_reason: Optional[str] = None

    def check_once(self) -> Optional[ManagedProcess]:
        return self.processes.first_exited()

    def run(self) -> None:
        logger.info(f">>> Nodes started, observing {len(self.processes)} process(es) every {self.interval:g}s")
        while self.state is MonitorState.MONITORING:
            try:
                self.cancel.sleep(self.interval)
            except ShutdownRequested as exc:
                logger.info(f"Monitoring stopped: {exc.reason}")
                self.state = MonitorState.TERMINAL
                return

            dead = self.check_once()
            if dead is not None:
                self._abort(dead)

    def _abort(self, dead: ManagedProcess) -> None:
        self.state = MonitorState.ABORTING
        self.abort_reason = f"{dead.name} (pid={dead.pid}) exited with code {dead.exit_code}"
        logger.error(f">>> {self.abort_reason}. Exiting.")
        try:
            if self.on_abort is not None:
                self.on_abort(self.abort_reason)
        finally:
            self.state = MonitorState.TERMINAL
        raise dead.crash_error(reason="died during steady-state monitoring")
