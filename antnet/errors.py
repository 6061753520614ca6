"""
Failure taxonomy for testnet bring-up.

Every fatal path raises one of these; the supervisor logs ``[phase] cause``
and tears the process group down. None of them is recovered from.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional


class AntnetError(Exception):
    """Base class for every fatal bring-up failure."""


class ShutdownRequested(Exception):
    """Raised out of a cancellable wait once a shutdown signal arrived."""

    def __init__(self, reason: str = "shutdown requested"):
        self.reason = reason
        super().__init__(reason)


# ──────────────────────────────────────────────────────────────────────────────
#  Configuration
# ──────────────────────────────────────────────────────────────────────────────

class ConfigProblem(str, Enum):
    MISSING = "missing"
    MALFORMED = "malformed"
    INVALID_PORT_RANGE = "invalid_port_range"
    UNREACHABLE_EXTERNAL_IP = "unreachable_external_ip"
    PORT_IN_USE = "port_in_use"


@dataclass(frozen=True)
class ConfigIssue:
    field: str
    problem: ConfigProblem
    detail: str

    def __str__(self) -> str:
        return f"{self.field}: {self.detail}"


class ConfigError(AntnetError):
    """Every missing or malformed configuration field, collected in one go."""

    def __init__(self, issues: Iterable[ConfigIssue]):
        self.issues: List[ConfigIssue] = list(issues)
        super().__init__("; ".join(str(issue) for issue in self.issues))

    @property
    def problems(self) -> List[ConfigProblem]:
        return [issue.problem for issue in self.issues]

    def has(self, problem: ConfigProblem) -> bool:
        return problem in self.problems


# ──────────────────────────────────────────────────────────────────────────────
#  Waits, parsing, processes
# ──────────────────────────────────────────────────────────────────────────────

class WaitTimeoutError(AntnetError, TimeoutError):
    """A bounded wait ran out before its condition held."""

    def __init__(
        self,
        what: str,
        elapsed: float,
        timeout: float,
        found: Optional[int] = None,
        expected: Optional[int] = None,
        partial_path: Optional[Path] = None,
    ):
        self.what = what
        self.elapsed = elapsed
        self.timeout = timeout
        self.found = found
        self.expected = expected
        self.partial_path = partial_path
        message = f"timed out waiting for {what} after {elapsed:.1f}s (timeout {timeout:g}s)"
        if expected is not None:
            message += f"; {found}/{expected} registered"
        super().__init__(message)


class ParseError(AntnetError):
    """A structured file produced by a child process had an unexpected shape."""

    def __init__(self, path: Path, detail: str):
        self.path = Path(path)
        self.detail = detail
        super().__init__(f"{self.path}: {detail}")


class MalformedRecordError(ParseError):
    def __init__(self, path: Path, field_count: int, expected: int = 4):
        self.field_count = field_count
        super().__init__(
            path, f"expected {expected} comma-separated values, found {field_count}"
        )


class ProcessCrashError(AntnetError):
    """A tracked child failed to start or died."""

    def __init__(
        self,
        name: str,
        pid: Optional[int] = None,
        exit_code: Optional[int] = None,
        index: Optional[int] = None,
        port: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        self.name = name
        self.pid = pid
        self.exit_code = exit_code
        self.index = index
        self.port = port
        self.reason = reason
        parts = [f"{name} is not running"]
        if pid is not None:
            parts.append(f"pid={pid}")
        if exit_code is not None:
            parts.append(f"exit code {exit_code}")
        if index is not None:
            parts.append(f"node index {index}")
        if port is not None:
            parts.append(f"port {port}")
        message = ", ".join(parts)
        if reason:
            message += f" ({reason})"
        super().__init__(message)
