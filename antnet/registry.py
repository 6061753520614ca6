"""
Reading the discovery registry and waiting for the fleet to register.

The registry is written by the leader node; the orchestrator only ever reads
snapshots of it. Two layouts are understood:

* node registry: ``{"nodes": [{"peer_id", "node_port", "listen_addr": [...]}]}``
* discovery cache: ``{"peers": {<peer_id>: [<addr> | {"addr": ...}, ...]}}``
  (a peer may also map to ``{"addrs": [...]}``)
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from antnet.errors import ParseError, WaitTimeoutError
from antnet.process import ManagedProcess, ProcessGroup
from antnet.readiness import MIN_POLL_INTERVAL, CancelToken
from antnet.utils import fs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    port: int
    peer_id: str
    listen_addr: str


def parse_multiaddr(addr: str) -> Tuple[Optional[str], Optional[int], Optional[str]]:
    """``/ip4/1.2.3.4/udp/9000/quic-v1/p2p/12D3...`` → ("1.2.3.4", 9000, "12D3...")."""
    parts = addr.strip().split("/")
    host = parts[2] if len(parts) > 2 and parts[1] in ("ip4", "ip6", "dns", "dns4", "dns6") else None
    port = None
    peer_id = None
    for i, part in enumerate(parts[:-1]):
        if part in ("udp", "tcp") and parts[i + 1].isdigit():
            port = int(parts[i + 1])
        elif part == "p2p":
            peer_id = parts[i + 1]
    return host, port, peer_id


def _addresses(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        if "addr" in value:
            return _addresses(value["addr"])
        return _addresses(value.get("addrs", []))
    if isinstance(value, list):
        return [addr for item in value for addr in _addresses(item)]
    return []


def _declared_port(value: Any, path: Path) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ParseError(path, f"node_port {value!r} is not an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ParseError(path, f"node_port {value!r} is not an integer") from None


def _raw_peers(document: Any, path: Path) -> List[Tuple[str, Optional[int], List[str]]]:
    """(peer_id, declared_port, addresses) for every peer in either layout."""
    if not isinstance(document, dict):
        raise ParseError(path, f"expected a JSON object, found {type(document).__name__}")
    if "nodes" in document:
        nodes = document["nodes"]
        if not isinstance(nodes, list):
            raise ParseError(path, "'nodes' is not a list")
        peers = []
        for node in nodes:
            if not isinstance(node, dict):
                raise ParseError(path, "node entry is not an object")
            # nodes that have not started yet carry null ids/addresses
            peers.append((
                node.get("peer_id") or "",
                _declared_port(node.get("node_port"), path),
                _addresses(node.get("listen_addr") or []),
            ))
        return peers
    if "peers" in document:
        raw = document["peers"]
        if isinstance(raw, dict):
            return [(peer_id, None, _addresses(addrs)) for peer_id, addrs in raw.items()]
        if isinstance(raw, list):
            # [[peer_id, [addrs]], ...]
            return [(item[0], None, _addresses(item[1])) for item in raw if isinstance(item, list) and len(item) == 2]
        raise ParseError(path, "'peers' is neither a map nor a list")
    raise ParseError(path, "neither 'nodes' nor 'peers' present")


def load_document(path: Path) -> Optional[Any]:
    """Parsed JSON, or None while the file is missing or mid-write.

    Bytes that are not UTF-8 raise ParseError, unless the file merely ends
    inside a multi-byte character.
    """
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except FileNotFoundError:
        return None
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        if exc.end >= len(raw):
            logger.debug(f"Registry {path} ends mid-character, not complete yet")
            return None
        raise ParseError(path, f"not valid UTF-8 at byte {exc.start}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.debug(f"Registry {path} not decodable yet: {exc}")
        return None


def read_registry(path: Path, host_ip: Optional[str] = None) -> Dict[str, RegistryEntry]:
    """Snapshot of the registry keyed by listen address.

    Only addresses advertised on ``host_ip`` are kept when it is given.
    """
    path = Path(path)
    document = load_document(path)
    if document is None:
        return {}
    entries: Dict[str, RegistryEntry] = {}
    for peer_id, declared_port, addrs in _raw_peers(document, path):
        for addr in addrs:
            host, port, addr_peer = parse_multiaddr(addr)
            if host_ip is not None and host != host_ip:
                continue
            port = port or declared_port
            if port is None:
                continue
            entries[addr] = RegistryEntry(port=port, peer_id=peer_id or addr_peer or "", listen_addr=addr)
    return entries


def leader_peer_addresses(path: Path) -> List[str]:
    """Flat list of every address in the leader's discovery cache."""
    document = load_document(Path(path))
    if document is None:
        return []
    return [addr for _peer, _port, addrs in _raw_peers(document, Path(path)) for addr in addrs]


def select_registered(entries: Iterable[RegistryEntry], ports: Sequence[int]) -> List[RegistryEntry]:
    """One entry per launched port, ordered by port. Entries for other ports are ignored."""
    wanted = set(ports)
    by_port: Dict[int, RegistryEntry] = {}
    for entry in sorted(entries, key=lambda e: (e.port, e.listen_addr)):
        if entry.port in wanted and entry.port not in by_port:
            by_port[entry.port] = entry
    return [by_port[port] for port in sorted(by_port)]


class RegistrationConverger:
    """Poll the registry until every launched node has registered."""

    def __init__(
        self,
        registry_path: Path,
        partial_path: Path,
        processes: ProcessGroup,
        cancel: CancelToken,
        host_ip: Optional[str] = None,
        interval: float = 1.0,
    ):
        self.registry_path = Path(registry_path)
        self.partial_path = Path(partial_path)
        self.processes = processes
        self.cancel = cancel
        self.host_ip = host_ip
        self.interval = max(interval, MIN_POLL_INTERVAL)
        self.registered: List[RegistryEntry] = []

    def await_convergence(
        self,
        ports: Sequence[int],
        timeout: float,
        watch: Optional[Sequence[ManagedProcess]] = None,
    ) -> List[str]:
        """Return the bootstrap list once ``len(ports)`` distinct nodes registered.

        Every tick first checks ``watch`` (default: every tracked child); a dead
        child aborts with ProcessCrashError since it can never register. On
        timeout the partial list is written for diagnostics and
        WaitTimeoutError carries the counts.
        """
        expected = len(ports)
        logger.info(f"Waiting for {expected} node(s) to register in '{self.registry_path}' (timeout: {timeout:g}s)...")
        start = time.monotonic()
        last_count = -1
        while True:
            self.cancel.raise_if_cancelled()
            self.processes.ensure_alive(watch)

            snapshot = read_registry(self.registry_path, self.host_ip)
            self.registered = select_registered(snapshot.values(), ports)
            count = len(self.registered)
            if count != last_count:
                logger.info(f"🔄 {count}/{expected} node(s) registered")
                last_count = count
            if count >= expected:
                return [entry.listen_addr for entry in self.registered]

            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                fs.write_lines(self.partial_path, [entry.listen_addr for entry in self.registered])
                logger.error(f"❌ Partial bootstrap list ({count} entries) written to {self.partial_path}")
                raise WaitTimeoutError(
                    "node registration",
                    elapsed,
                    timeout,
                    found=count,
                    expected=expected,
                    partial_path=self.partial_path,
                )
            self.cancel.sleep(min(self.interval, timeout - elapsed))
