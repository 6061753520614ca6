from __future__ import annotations

import logging
from typing import List

from antnet.config import FleetConfig, Settings
from antnet.errors import ProcessCrashError
from antnet.ledger import LedgerConnection
from antnet.process import ManagedProcess, ProcessGroup
from antnet.readiness import CancelToken, wait_for_path
from antnet.registry import leader_peer_addresses
from antnet.utils import fs

logger = logging.getLogger(__name__)


class NodeFleetLauncher:
    """Launch one storage node per port, leader first.

    Followers register against the leader, so none starts until the
    leader's discovery cache exists.
    """

    def __init__(self, settings: Settings, processes: ProcessGroup, cancel: CancelToken):
        self.settings = settings
        self.processes = processes
        self.cancel = cancel

    def node_command(
        self, port: int, fleet: FleetConfig, ledger: LedgerConnection, leader: bool
    ) -> List[str]:
        cmd = list(self.settings.commands.node)
        cmd += [
            "--rewards-address", fleet.rewards_address,
            "--ip", fleet.external_ip,
            "--port", str(port),
            "--root-dir", str(fs.node_dir(self.settings.paths, port)),
            "--log-output-dest", str(fs.get_logs_dir(self.settings.paths) / f"node_{port}"),
            "--local",
        ]
        if leader:
            cmd.append("--first")
        cmd += [
            "evm-custom",
            "--rpc-url", ledger.rpc_url,
            "--payment-token-address", ledger.payment_token_address,
            "--data-payments-address", ledger.data_payments_address,
        ]
        return cmd

    def launch(self, fleet: FleetConfig, ledger: LedgerConnection) -> List[ManagedProcess]:
        intervals, timeouts = self.settings.intervals, self.settings.timeouts
        logger.info(f"🚀 Launching {fleet.node_count} storage node(s) on ports {fleet.port_range_start}-{fleet.port_range_end}")
        nodes: List[ManagedProcess] = []

        for index, port in enumerate(fleet.ports):
            leader = index == 0
            if not leader:
                self.cancel.sleep(intervals.node_stagger_sec)
                self._ensure_fleet_alive(nodes)

            cmd = self.node_command(port, fleet, ledger, leader)
            try:
                proc = self.processes.spawn(f"node_{port}", cmd, role="node", port=port)
            except ProcessCrashError as exc:
                raise ProcessCrashError(f"node_{port}", index=index, port=port, reason=exc.reason) from exc
            nodes.append(proc)

            if leader:
                logger.info(f"Node {port} is the leader, waiting for its discovery cache before launching followers")
                wait_for_path(
                    self.settings.paths.leader_cache,
                    timeout=timeouts.leader_ready_sec,
                    interval=intervals.leader_poll_sec,
                    cancel=self.cancel,
                    on_tick=lambda: self._ensure_fleet_alive(nodes),
                )
                known = leader_peer_addresses(self.settings.paths.leader_cache)
                logger.info(f"Leader discovery cache ready with {len(known)} known address(es)")

        logger.info(f"✅ All {len(nodes)} node(s) launched")
        return nodes

    def _ensure_fleet_alive(self, nodes: List[ManagedProcess]) -> None:
        for index, proc in enumerate(nodes):
            if not proc.refresh():
                raise proc.crash_error(index=index)
