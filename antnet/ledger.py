from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from antnet.config import FleetConfig, Settings
from antnet.errors import MalformedRecordError, ParseError
from antnet.process import ProcessGroup, build_env
from antnet.readiness import CancelToken, wait_for_path

logger = logging.getLogger(__name__)

RECORD_FIELDS = 4


@dataclass(frozen=True)
class LedgerConnection:
    rpc_url: str
    payment_token_address: str
    data_payments_address: str
    secret_key: str


def parse_ledger_record(path: Path) -> LedgerConnection:
    """Read the first line of the ledger record: ``rpc_url,payment_token,data_payments,secret_key``.

    The producer writes the file in one go, so a wrong field count is final.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            line = f.readline().rstrip("\r\n")
    except UnicodeDecodeError as exc:
        raise ParseError(path, f"not valid UTF-8 at byte {exc.start}") from exc
    parts = line.split(",")
    if len(parts) != RECORD_FIELDS:
        raise MalformedRecordError(path, len(parts), RECORD_FIELDS)
    rpc_url, payment_token_address, data_payments_address, secret_key = (p.strip() for p in parts)
    return LedgerConnection(
        rpc_url=rpc_url,
        payment_token_address=payment_token_address,
        data_payments_address=data_payments_address,
        secret_key=secret_key,
    )


class LedgerLauncher:
    """Start the EVM test-chain and wait for it to publish its connection record."""

    def __init__(self, settings: Settings, processes: ProcessGroup, cancel: CancelToken):
        self.settings = settings
        self.processes = processes
        self.cancel = cancel

    def launch(self, fleet: FleetConfig) -> LedgerConnection:
        paths, timeouts = self.settings.paths, self.settings.timeouts
        logger.info("Starting ledger test-chain...")
        env = build_env({"ANVIL_IP_ADDR": fleet.external_ip})
        proc = self.processes.spawn("ledger", self.settings.commands.ledger, role="ledger", env=env)
        self.processes.confirm_started(proc, timeouts.startup_grace_sec, self.cancel)

        wait_for_path(
            paths.ledger_record,
            timeout=timeouts.ledger_ready_sec,
            interval=self.settings.intervals.ledger_poll_sec,
            cancel=self.cancel,
            on_tick=lambda: self.processes.ensure_alive([proc]),
        )
        connection = parse_ledger_record(paths.ledger_record)
        logger.info(f"✅ Ledger ready at {connection.rpc_url}")
        return connection
