import signal
import sys
import time

import psutil
import pytest

from antnet.errors import ProcessCrashError
from antnet.process import ProcessGroup, ProcessState
from antnet.readiness import CancelToken

SLEEP = [sys.executable, "-c", "import time; time.sleep(60)"]
EXIT_2 = [sys.executable, "-c", "import sys; sys.exit(2)"]
IGNORE_TERM = [
    sys.executable,
    "-c",
    "import signal, time\nsignal.signal(signal.SIGTERM, signal.SIG_IGN)\nprint('ready', flush=True)\ntime.sleep(60)",
]
WITH_CHILD = [
    sys.executable,
    "-c",
    "import subprocess, sys, time\n"
    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
    "time.sleep(60)",
]


@pytest.fixture
def group(tmp_path):
    g = ProcessGroup(tmp_path / "logs", terminate_grace=1.0)
    yield g
    g.terminate_all()


class TestSpawn:
    def test_tracks_process(self, group, tmp_path):
        proc = group.spawn("sleeper", SLEEP, role="node", port=9000)

        assert proc.pid > 0
        assert proc.state is ProcessState.STARTING
        assert proc.port == 9000
        assert list(group) == [proc]
        assert (tmp_path / "logs" / "sleeper.out").exists()
        assert (tmp_path / "logs" / "sleeper.err").exists()

    def test_missing_binary_is_a_crash(self, group):
        with pytest.raises(ProcessCrashError) as exc_info:
            group.spawn("ghost", ["/nonexistent/antnode"], role="node", port=9000)

        assert exc_info.value.port == 9000
        assert "failed to start" in str(exc_info.value)
        assert len(group) == 0

    def test_unwritable_log_dir_is_a_crash(self, tmp_path):
        blocker = tmp_path / "logs"
        blocker.write_text("not a directory")
        group = ProcessGroup(blocker)

        with pytest.raises(ProcessCrashError) as exc_info:
            group.spawn("ledger", SLEEP, role="ledger")

        assert "failed to start" in str(exc_info.value)
        assert len(group) == 0

    def test_confirm_started_marks_running(self, group):
        proc = group.spawn("sleeper", SLEEP, role="ledger")
        group.confirm_started(proc, 0.2, CancelToken())
        assert proc.state is ProcessState.RUNNING

    def test_confirm_started_detects_early_exit(self, group):
        proc = group.spawn("quitter", EXIT_2, role="ledger")

        with pytest.raises(ProcessCrashError) as exc_info:
            group.confirm_started(proc, 1.0, CancelToken())

        assert exc_info.value.exit_code == 2
        assert proc.state is ProcessState.EXITED


class TestLiveness:
    def test_ensure_alive_reports_node_index(self, group):
        group.spawn("node_9000", SLEEP, role="node", port=9000)
        dead = group.spawn("node_9001", EXIT_2, role="node", port=9001)
        dead.popen.wait(timeout=10)

        with pytest.raises(ProcessCrashError) as exc_info:
            group.ensure_alive()

        assert exc_info.value.index == 1
        assert exc_info.value.port == 9001

    def test_first_exited_none_when_all_alive(self, group):
        group.spawn("a", SLEEP, role="node")
        group.spawn("b", SLEEP, role="node")
        assert group.first_exited() is None


def _gone(proc: psutil.Process) -> bool:
    try:
        return proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _eventually(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


class TestTerminateAll:
    def test_terminates_and_is_idempotent(self, group):
        alive = group.spawn("alive", SLEEP, role="node")
        gone = group.spawn("gone", EXIT_2, role="node")
        gone.popen.wait(timeout=10)

        outcomes = dict(group.terminate_all())

        assert outcomes["alive"] == "terminated"
        assert outcomes["gone"] == "already exited (code 2)"
        assert alive.state is ProcessState.EXITED
        assert len(group) == 0
        assert group.terminate_all() == []

    def test_kills_process_ignoring_sigterm(self, group, tmp_path):
        stubborn = group.spawn("stubborn", IGNORE_TERM, role="node")
        out = tmp_path / "logs" / "stubborn.out"
        assert _eventually(lambda: out.exists() and "ready" in out.read_text())

        outcomes = dict(group.terminate_all())

        assert outcomes["stubborn"] == "killed"
        assert stubborn.exit_code == -signal.SIGKILL

    def test_terminates_descendants(self, group):
        parent = group.spawn("parent", WITH_CHILD, role="ledger")
        assert _eventually(lambda: bool(psutil.Process(parent.pid).children(recursive=True)))
        children = psutil.Process(parent.pid).children(recursive=True)

        group.terminate_all()

        assert _eventually(lambda: all(_gone(child) for child in children))
