"""
Shared fixtures.

Child processes are small Python scripts run with ``sys.executable``. They
honor the same command-line contracts as evm-testnet, antnode and darkhttpd:

* ledger: writes its 4-field record, then idles
* node: records its argv; the ``--first`` node writes the discovery cache and
  keeps the registry up to date with every node that registered
* publisher: serves ``<dir> --port <port>`` over HTTP
"""
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict

import pytest

from antnet.config import settings_from_mapping
from tests.helpers import LEDGER_RECORD, REWARDS_ADDRESS, free_port


FAKE_LEDGER = textwrap.dedent(
    """
    import os, sys, time
    from pathlib import Path

    record = Path(sys.argv[1])
    time.sleep(float(os.environ.get("FAKE_LEDGER_DELAY", "0")))
    if os.environ.get("FAKE_LEDGER_EXIT"):
        sys.exit(int(os.environ["FAKE_LEDGER_EXIT"]))
    record.parent.mkdir(parents=True, exist_ok=True)
    tmp = record.with_suffix(".tmp")
    tmp.write_text(os.environ.get("FAKE_LEDGER_RECORD", "{record}") + "\\n")
    os.replace(tmp, record)
    while True:
        time.sleep(1)
    """
).replace("{record}", LEDGER_RECORD)


FAKE_NODE = textwrap.dedent(
    """
    import json, os, sys, time
    from pathlib import Path

    record_dir, cache, registry = Path(sys.argv[1]), Path(sys.argv[2]), Path(sys.argv[3])
    args = sys.argv[4:]
    port = int(args[args.index("--port") + 1])
    ip = args[args.index("--ip") + 1]
    leader = "--first" in args
    record_dir.mkdir(parents=True, exist_ok=True)

    def write_atomic(path, text):
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name("." + path.name + ".tmp")
        tmp.write_text(text)
        os.replace(tmp, path)

    write_atomic(record_dir / f"args_{port}.json", json.dumps(args))

    def ports(name):
        return {int(p) for p in os.environ.get(name, "").split(",") if p}

    if port in ports("FAKE_NODE_CRASH_PORTS"):
        sys.exit(3)
    if port not in ports("FAKE_UNREGISTERED_PORTS"):
        write_atomic(record_dir / f"registered_{port}", ip)

    def write_json(path, document):
        write_atomic(path, json.dumps(document))

    if not leader:
        while True:
            time.sleep(1)

    delay = os.environ.get("FAKE_LEADER_DELAY", "0")
    if delay == "never":
        while True:
            time.sleep(1)
    time.sleep(float(delay))
    peer = f"12D3Koo{port}"
    write_json(cache, {"peers": {peer: [{"addr": f"/ip4/{ip}/udp/{port}/quic-v1/p2p/{peer}"}]}})
    while True:
        nodes = []
        for marker in sorted(record_dir.glob("registered_*")):
            p = int(marker.name.split("_")[1])
            host = marker.read_text()
            nodes.append({
                "peer_id": f"12D3Koo{p}",
                "node_port": p,
                "listen_addr": [
                    f"/ip4/127.0.0.1/udp/{p}/quic-v1/p2p/12D3Koo{p}",
                    f"/ip4/{host}/udp/{p}/quic-v1/p2p/12D3Koo{p}",
                ],
            })
        write_json(registry, {"nodes": nodes})
        time.sleep(0.05)
    """
)


FAKE_PUBLISHER = textwrap.dedent(
    """
    import functools, http.server, sys

    directory = sys.argv[1]
    port = int(sys.argv[sys.argv.index("--port") + 1])
    handler = functools.partial(http.server.SimpleHTTPRequestHandler, directory=directory)
    http.server.ThreadingHTTPServer(("127.0.0.1", port), handler).serve_forever()
    """
)

SLEEPER = "import time\nwhile True:\n    time.sleep(1)\n"


@pytest.fixture
def scripts(tmp_path: Path) -> Dict[str, Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    out = {}
    for name, source in (
        ("ledger", FAKE_LEDGER),
        ("node", FAKE_NODE),
        ("publisher", FAKE_PUBLISHER),
        ("sleeper", SLEEPER),
    ):
        path = bin_dir / f"fake_{name}.py"
        path.write_text(source)
        out[name] = path
    return out


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    d.mkdir()
    return d


@pytest.fixture
def make_settings(data_dir: Path, scripts: Dict[str, Path], tmp_path: Path):
    """Settings wired to the fake children with test-sized timeouts."""
    registry = data_dir / "registry" / "local_node_registry.json"
    cache = data_dir / "bootstrap_cache" / "bootstrap_cache.json"
    record_dir = tmp_path / "node_records"

    def _make(**overrides: Any):
        raw: Dict[str, Any] = {
            "paths": {
                "data_dir": str(data_dir),
                "leader_cache": str(cache),
                "registry": str(registry),
            },
            "commands": {
                "ledger": [sys.executable, str(scripts["ledger"]), str(data_dir / "evm_testnet_data.csv")],
                "node": [sys.executable, str(scripts["node"]), str(record_dir), str(cache), str(registry)],
                "publisher": [sys.executable, str(scripts["publisher"])],
            },
            "timeouts": {
                "ledger_ready_sec": 10,
                "leader_ready_sec": 10,
                "registration_sec": 10,
                "publisher_ready_sec": 10,
                "startup_grace_sec": 0.2,
                "terminate_grace_sec": 3,
            },
            "intervals": {
                "ledger_poll_sec": 0.05,
                "leader_poll_sec": 0.05,
                "registration_poll_sec": 0.05,
                "liveness_sec": 0.1,
                "node_stagger_sec": 0.05,
            },
            "publisher": {"verify": False},
            "preflight": {"check_ports": False},
        }
        for section, values in overrides.items():
            raw.setdefault(section, {}).update(values)
        return settings_from_mapping(raw)

    _make.record_dir = record_dir
    return _make


@pytest.fixture
def network_env() -> Dict[str, str]:
    return {
        "REWARDS_ADDRESS": REWARDS_ADDRESS,
        "EXTERNAL_IP_ADDRESS": "127.0.0.1",
        "NODE_PORT": "9000-9002",
        "BOOTSTRAP_PORT": str(free_port()),
    }
