from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import toml

from antnet.errors import ConfigError, ConfigIssue, ConfigProblem

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# ──────────────────────────────────────────────────────────────────────────────
#  Built-in defaults (same shape as [tool.antnet] in pyproject.toml)
# ──────────────────────────────────────────────────────────────────────────────
DEFAULTS: Dict[str, Dict[str, Any]] = {
    "paths": {
        "data_dir": "/data/.local/share/autonomi",
        "ledger_record": "evm_testnet_data.csv",
        "leader_cache": "bootstrap_cache/bootstrap_cache.json",
        "registry": "bootstrap_cache/bootstrap_cache.json",
        "export_dir": "export",
        "nodes_dir": "nodes",
        "logs_dir": "logs",
        "diagnostics_dir": "diagnostics",
    },
    "commands": {
        "ledger": ["evm-testnet"],
        "node": ["antnode"],
        "publisher": ["darkhttpd"],
    },
    "timeouts": {
        "ledger_ready_sec": 30,
        "leader_ready_sec": 60,
        "registration_sec": 180,
        "publisher_ready_sec": 10,
        "startup_grace_sec": 1.0,
        "terminate_grace_sec": 5.0,
    },
    "intervals": {
        "ledger_poll_sec": 0.2,
        "leader_poll_sec": 0.5,
        "registration_poll_sec": 1.0,
        "liveness_sec": 5.0,
        "node_stagger_sec": 1.0,
    },
    "publisher": {"verify": True},
    "preflight": {"check_ports": True},
}


@dataclass(frozen=True)
class FleetConfig:
    """Validated network parameters. Built only by ConfigValidator."""

    port_range_start: int
    port_range_end: int
    rewards_address: str
    external_ip: str
    bootstrap_port: int

    @property
    def node_count(self) -> int:
        return self.port_range_end - self.port_range_start + 1

    @property
    def ports(self) -> List[int]:
        return list(range(self.port_range_start, self.port_range_end + 1))


@dataclass(frozen=True)
class PathSettings:
    data_dir: Path
    ledger_record: Path
    leader_cache: Path
    registry: Path
    export_dir: Path
    nodes_dir: Path
    logs_dir: Path
    diagnostics_dir: Path

    @property
    def bootstrap_file(self) -> Path:
        return self.export_dir / "bootstrap.txt"

    @property
    def partial_bootstrap_file(self) -> Path:
        return self.diagnostics_dir / "bootstrap.partial.txt"


@dataclass(frozen=True)
class CommandSettings:
    ledger: Tuple[str, ...]
    node: Tuple[str, ...]
    publisher: Tuple[str, ...]


@dataclass(frozen=True)
class TimeoutSettings:
    ledger_ready_sec: float
    leader_ready_sec: float
    registration_sec: float
    publisher_ready_sec: float
    startup_grace_sec: float
    terminate_grace_sec: float


@dataclass(frozen=True)
class IntervalSettings:
    ledger_poll_sec: float
    leader_poll_sec: float
    registration_poll_sec: float
    liveness_sec: float
    node_stagger_sec: float


@dataclass(frozen=True)
class Settings:
    paths: PathSettings
    commands: CommandSettings
    timeouts: TimeoutSettings
    intervals: IntervalSettings
    verify_publisher: bool
    check_ports: bool


# ──────────────────────────────────────────────────────────────────────────────
#  Loading
# ──────────────────────────────────────────────────────────────────────────────

def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@lru_cache(maxsize=None)
def _load_toml(path: str) -> Dict[str, Any]:
    """Load and cache the ``[tool.antnet]`` table of a TOML file."""
    cfg = toml.load(path)
    return cfg.get("tool", {}).get("antnet", {})


def _config_source(config_path: Optional[Path]) -> Optional[Path]:
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("ANTNET_CONFIG")
    if env_path:
        return Path(env_path)
    candidate = PROJECT_ROOT / "pyproject.toml"
    if candidate.exists():
        return candidate
    return None


def _resolve(data_dir: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else data_dir / path


def settings_from_mapping(raw: Mapping[str, Any], data_dir: Optional[Path] = None) -> Settings:
    """Build Settings from a ``[tool.antnet]``-shaped mapping merged over DEFAULTS."""
    cfg = _deep_merge(DEFAULTS, raw)
    paths = cfg["paths"]
    root = Path(data_dir or paths["data_dir"]).expanduser()
    return Settings(
        paths=PathSettings(
            data_dir=root,
            ledger_record=_resolve(root, paths["ledger_record"]),
            leader_cache=_resolve(root, paths["leader_cache"]),
            registry=_resolve(root, paths["registry"]),
            export_dir=_resolve(root, paths["export_dir"]),
            nodes_dir=_resolve(root, paths["nodes_dir"]),
            logs_dir=_resolve(root, paths["logs_dir"]),
            diagnostics_dir=_resolve(root, paths["diagnostics_dir"]),
        ),
        commands=CommandSettings(
            ledger=tuple(cfg["commands"]["ledger"]),
            node=tuple(cfg["commands"]["node"]),
            publisher=tuple(cfg["commands"]["publisher"]),
        ),
        timeouts=TimeoutSettings(**{k: float(v) for k, v in cfg["timeouts"].items()}),
        intervals=IntervalSettings(**{k: float(v) for k, v in cfg["intervals"].items()}),
        verify_publisher=bool(cfg["publisher"]["verify"]),
        check_ports=bool(cfg["preflight"]["check_ports"]),
    )


def load_settings(config_path: Optional[Path] = None, data_dir: Optional[Path] = None) -> Settings:
    """Settings from the first config source found. Priority: --config > $ANTNET_CONFIG > pyproject.toml > defaults.

    ``data_dir`` (or ``$ANTNET_DATA_DIR``) overrides ``[tool.antnet.paths].data_dir``.
    """
    source = _config_source(config_path)
    raw: Dict[str, Any] = {}
    if source is not None:
        if not source.exists():
            raise ConfigError([ConfigIssue("config", ConfigProblem.MISSING, f"{source} does not exist")])
        raw = _load_toml(str(source.resolve()))
        logger.debug(f"Loaded settings from {source}")
    else:
        logger.debug("No settings file found, using built-in defaults")

    data_dir = data_dir or os.environ.get("ANTNET_DATA_DIR") or None
    return settings_from_mapping(raw, Path(data_dir) if data_dir else None)
