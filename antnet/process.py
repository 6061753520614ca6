from __future__ import annotations

import datetime as _dt
import io
import logging
import os
import subprocess as _sp
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import psutil

from antnet.errors import ProcessCrashError
from antnet.readiness import CancelToken

logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class ManagedProcess:
    """One launched child. Owned by the ProcessGroup that spawned it."""

    name: str
    pid: int
    started_at: _dt.datetime
    role: str
    port: Optional[int] = None
    state: ProcessState = ProcessState.STARTING
    exit_code: Optional[int] = None
    popen: Optional[_sp.Popen] = field(default=None, repr=False, compare=False)

    def refresh(self) -> bool:
        """Poll the child, update ``state`` and return whether it is alive."""
        if self.state is ProcessState.EXITED:
            return False
        code = self.popen.poll() if self.popen is not None else None
        if code is not None:
            self.state = ProcessState.EXITED
            self.exit_code = code
            return False
        if self.state is ProcessState.STARTING:
            self.state = ProcessState.RUNNING
        return True

    def crash_error(self, index: Optional[int] = None, reason: Optional[str] = None) -> ProcessCrashError:
        return ProcessCrashError(
            self.name, pid=self.pid, exit_code=self.exit_code, index=index, port=self.port, reason=reason
        )


def build_env(extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Return a fresh environment dict for a child process."""
    env = os.environ.copy()
    if extra:
        env.update({k: str(v) for k, v in extra.items()})
    return env


class ProcessGroup:
    """Every child the supervisor launched, in launch order.

    Child stdout/stderr go to ``<logs_dir>/<name>.out`` / ``.err``.
    """

    def __init__(
        self,
        logs_dir: Path,
        terminate_grace: float = 5.0,
        popen: Callable[..., _sp.Popen] = _sp.Popen,
    ):
        self.logs_dir = Path(logs_dir)
        self.terminate_grace = terminate_grace
        self._popen = popen
        self._procs: List[ManagedProcess] = []
        # Track log file handles to avoid descriptor leaks
        self._log_handles: Dict[int, Tuple[io.TextIOWrapper, io.TextIOWrapper]] = {}

    def __iter__(self) -> Iterator[ManagedProcess]:
        return iter(list(self._procs))

    def __len__(self) -> int:
        return len(self._procs)

    def by_role(self, role: str) -> List[ManagedProcess]:
        return [proc for proc in self._procs if proc.role == role]

    # ──────────────────────────────────────────────────────────────────────
    #  Launch
    # ──────────────────────────────────────────────────────────────────────

    def spawn(
        self,
        name: str,
        cmd: Sequence[str],
        role: str,
        port: Optional[int] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> ManagedProcess:
        """Start a child and register it for liveness checks and cleanup.

        OSError from the launch (missing or non-executable binary, unwritable
        log directory) becomes ProcessCrashError.
        """
        stdout_path = self.logs_dir / f"{name}.out"
        stderr_path = self.logs_dir / f"{name}.err"
        out_fh = err_fh = None
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            out_fh = open(stdout_path, "a", encoding="utf-8", buffering=1)
            err_fh = open(stderr_path, "a", encoding="utf-8", buffering=1)
            popen = self._popen(
                list(cmd),
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else build_env(),
                stdout=out_fh,
                stderr=err_fh,
                stdin=_sp.DEVNULL,
            )
        except OSError as exc:
            for fh in (out_fh, err_fh):
                if fh is not None:
                    fh.close()
            raise ProcessCrashError(name, port=port, reason=f"failed to start {cmd[0]}: {exc}") from exc

        proc = ManagedProcess(
            name=name,
            pid=popen.pid,
            started_at=_dt.datetime.now(),
            role=role,
            port=port,
            popen=popen,
        )
        self._procs.append(proc)
        self._log_handles[popen.pid] = (out_fh, err_fh)
        logger.info(f"{name} started with PID {popen.pid}")
        logger.debug(f"Spawned {name}: {' '.join(cmd)} → logs: {stdout_path.name}, {stderr_path.name}")
        return proc

    def confirm_started(self, proc: ManagedProcess, grace: float, cancel: CancelToken) -> ManagedProcess:
        """Give ``proc`` ``grace`` seconds, then fail if it already exited."""
        cancel.sleep(grace)
        if not proc.refresh():
            raise proc.crash_error(reason="exited during startup")
        return proc

    # ──────────────────────────────────────────────────────────────────────
    #  Liveness
    # ──────────────────────────────────────────────────────────────────────

    def first_exited(self, procs: Optional[Sequence[ManagedProcess]] = None) -> Optional[ManagedProcess]:
        for proc in (procs if procs is not None else self._procs):
            if not proc.refresh():
                return proc
        return None

    def ensure_alive(self, procs: Optional[Sequence[ManagedProcess]] = None) -> None:
        """Raise ProcessCrashError for the first tracked child found dead."""
        dead = self.first_exited(procs)
        if dead is not None:
            raise dead.crash_error(index=self._role_index(dead))

    def _role_index(self, proc: ManagedProcess) -> Optional[int]:
        if proc.role != "node":
            return None
        return self.by_role("node").index(proc)

    # ──────────────────────────────────────────────────────────────────────
    #  Teardown
    # ──────────────────────────────────────────────────────────────────────

    def terminate_all(self) -> List[Tuple[str, str]]:
        """SIGTERM every live child (and its descendants), SIGKILL what survives the grace period.

        Safe to call repeatedly and with children that already exited.
        Returns ``(name, outcome)`` pairs in launch order.
        """
        outcomes: Dict[str, str] = {}
        signalled: List[ManagedProcess] = []
        descendants: Dict[int, List[psutil.Process]] = {}

        for proc in self._procs:
            if not proc.refresh():
                outcomes[proc.name] = f"already exited (code {proc.exit_code})"
                continue
            try:
                descendants[proc.pid] = psutil.Process(proc.pid).children(recursive=True)
            except psutil.NoSuchProcess:
                descendants[proc.pid] = []
            for member in descendants[proc.pid]:
                try:
                    member.terminate()
                except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                    logger.debug(f"Cannot signal pid {member.pid} of {proc.name}: {exc}")
            proc.popen.terminate()
            signalled.append(proc)
            outcomes[proc.name] = "terminated"

        # Wait a bit for graceful termination
        deadline = time.monotonic() + self.terminate_grace
        for proc in signalled:
            try:
                proc.popen.wait(timeout=max(deadline - time.monotonic(), 0))
            except _sp.TimeoutExpired:
                pass
        stragglers = [member for members in descendants.values() for member in members]
        _gone, alive = psutil.wait_procs(stragglers, timeout=max(deadline - time.monotonic(), 0))

        # Force kill whatever is left
        for proc in signalled:
            if proc.popen.poll() is None:
                proc.popen.kill()
                outcomes[proc.name] = "killed"
        for member in alive:
            try:
                member.kill()
            except psutil.NoSuchProcess:
                pass

        for proc in signalled:
            try:
                proc.popen.wait(timeout=self.terminate_grace)
            except _sp.TimeoutExpired:
                logger.error(f"{proc.name} (pid={proc.pid}) did not exit after SIGKILL")
        for proc in self._procs:
            proc.refresh()
            logger.info(f"{proc.name} (pid={proc.pid}): {outcomes[proc.name]}")

        self._close_logs()
        ordered = [(proc.name, outcomes[proc.name]) for proc in self._procs]
        self._procs.clear()
        return ordered

    def _close_logs(self) -> None:
        for pid, (out_fh, err_fh) in list(self._log_handles.items()):
            try:
                if not out_fh.closed:
                    out_fh.close()
            finally:
                if not err_fh.closed:
                    err_fh.close()
            self._log_handles.pop(pid, None)
