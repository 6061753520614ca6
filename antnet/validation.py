"""
Pre-launch checks on the network parameters.

Nothing here touches the filesystem or starts a process: a ConfigError is
raised before the first child exists.
"""
from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Callable, Iterable, List, Mapping, Optional, Set, Tuple

import psutil

from antnet.config import FleetConfig
from antnet.errors import ConfigError, ConfigIssue, ConfigProblem

logger = logging.getLogger(__name__)

PORT_SPEC = re.compile(r"^(\d+)(?:-(\d+))?$")
EVM_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

REQUIRED = ("REWARDS_ADDRESS", "EXTERNAL_IP_ADDRESS", "NODE_PORT", "BOOTSTRAP_PORT")
# Older deployments export the advertised address under this name.
LEGACY_ALIASES = {"EXTERNAL_IP_ADDRESS": "HOST_IP_ADDRESS"}


def local_ip_addresses() -> Set[str]:
    """Every IPv4/IPv6 address bound to a local interface."""
    addresses: Set[str] = set()
    for snics in psutil.net_if_addrs().values():
        for snic in snics:
            if snic.family in (socket.AF_INET, socket.AF_INET6):
                addresses.add(snic.address.split("%", 1)[0])
    return addresses


def parse_port_spec(spec: str) -> Tuple[int, int]:
    """``PORT`` or ``START-END`` → (start, end). ConfigError(INVALID_PORT_RANGE) otherwise."""
    match = PORT_SPEC.match(spec.strip())
    if not match:
        raise ConfigError(
            [ConfigIssue("NODE_PORT", ConfigProblem.INVALID_PORT_RANGE, f"'{spec}' is not PORT or START-END")]
        )
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else start
    if start > end:
        raise ConfigError(
            [ConfigIssue("NODE_PORT", ConfigProblem.INVALID_PORT_RANGE, f"start {start} is greater than end {end}")]
        )
    if not (1 <= start <= 65535 and 1 <= end <= 65535):
        raise ConfigError(
            [ConfigIssue("NODE_PORT", ConfigProblem.INVALID_PORT_RANGE, f"'{spec}' is outside 1-65535")]
        )
    return start, end


def is_port_available(port: int, kind: int = socket.SOCK_STREAM, host: str = "0.0.0.0") -> bool:
    """Check if a port is available for binding."""
    try:
        with socket.socket(socket.AF_INET, kind) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            return True
    except OSError:
        return False


class ConfigValidator:
    """Turn an environment-style mapping into a FleetConfig, collecting every problem first."""

    def __init__(self, local_addresses: Callable[[], Iterable[str]] = local_ip_addresses):
        self._local_addresses = local_addresses

    def validate(self, env: Mapping[str, str]) -> FleetConfig:
        issues: List[ConfigIssue] = []
        values = {key: self._lookup(env, key) for key in REQUIRED}

        for key, value in values.items():
            if not value:
                issues.append(ConfigIssue(key, ConfigProblem.MISSING, "environment variable is not set"))

        rewards_address = values["REWARDS_ADDRESS"]
        if rewards_address and not EVM_ADDRESS.match(rewards_address):
            issues.append(
                ConfigIssue("REWARDS_ADDRESS", ConfigProblem.MALFORMED, f"'{rewards_address}' is not an EVM address")
            )

        port_range: Optional[Tuple[int, int]] = None
        if values["NODE_PORT"]:
            try:
                port_range = parse_port_spec(values["NODE_PORT"])
            except ConfigError as exc:
                issues.extend(exc.issues)

        bootstrap_port: Optional[int] = None
        if values["BOOTSTRAP_PORT"]:
            bootstrap_port = self._parse_port("BOOTSTRAP_PORT", values["BOOTSTRAP_PORT"], issues)
            if bootstrap_port is not None and port_range and port_range[0] <= bootstrap_port <= port_range[1]:
                issues.append(
                    ConfigIssue(
                        "BOOTSTRAP_PORT",
                        ConfigProblem.MALFORMED,
                        f"{bootstrap_port} overlaps NODE_PORT range {port_range[0]}-{port_range[1]}",
                    )
                )

        external_ip = values["EXTERNAL_IP_ADDRESS"]
        if external_ip:
            try:
                external_ip = str(ipaddress.ip_address(external_ip))
            except ValueError:
                issues.append(
                    ConfigIssue("EXTERNAL_IP_ADDRESS", ConfigProblem.MALFORMED, f"'{external_ip}' is not an IP address")
                )
            else:
                bound = set(self._local_addresses())
                if external_ip not in bound:
                    issues.append(
                        ConfigIssue(
                            "EXTERNAL_IP_ADDRESS",
                            ConfigProblem.UNREACHABLE_EXTERNAL_IP,
                            f"{external_ip} is not bound to any local interface (bound: {', '.join(sorted(bound))})",
                        )
                    )

        if issues:
            raise ConfigError(issues)

        fleet = FleetConfig(
            port_range_start=port_range[0],
            port_range_end=port_range[1],
            rewards_address=rewards_address,
            external_ip=external_ip,
            bootstrap_port=bootstrap_port,
        )
        logger.info(
            f"Configuration valid: {fleet.node_count} node(s) on ports "
            f"{fleet.port_range_start}-{fleet.port_range_end}, advertising {fleet.external_ip}"
        )
        return fleet

    @staticmethod
    def _lookup(env: Mapping[str, str], key: str) -> str:
        value = (env.get(key) or "").strip()
        if not value and key in LEGACY_ALIASES:
            value = (env.get(LEGACY_ALIASES[key]) or "").strip()
        return value

    @staticmethod
    def _parse_port(key: str, value: str, issues: List[ConfigIssue]) -> Optional[int]:
        if not value.isdigit() or not 1 <= int(value) <= 65535:
            issues.append(ConfigIssue(key, ConfigProblem.MALFORMED, f"'{value}' is not a port in 1-65535"))
            return None
        return int(value)


def check_ports_available(fleet: FleetConfig) -> None:
    """Fail with PORT_IN_USE if a node (UDP) or publisher (TCP) port is already bound."""
    issues: List[ConfigIssue] = []
    for port in fleet.ports:
        if not is_port_available(port, socket.SOCK_DGRAM):
            issues.append(ConfigIssue("NODE_PORT", ConfigProblem.PORT_IN_USE, f"UDP port {port} is already in use"))
    if not is_port_available(fleet.bootstrap_port, socket.SOCK_STREAM):
        issues.append(
            ConfigIssue(
                "BOOTSTRAP_PORT", ConfigProblem.PORT_IN_USE, f"TCP port {fleet.bootstrap_port} is already in use"
            )
        )
    if issues:
        raise ConfigError(issues)
