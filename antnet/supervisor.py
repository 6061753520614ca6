"""
Composition root: owns every child process and sequences the bring-up.

    validate → purge → ledger → leader + followers → registration → publisher
             → report → monitor until signalled

Any failure along the way, a signal, or a child dying in steady state ends in
the same cleanup: every tracked child is terminated before the process exits.
"""
from __future__ import annotations

import atexit
import logging
import os
import signal
import sys
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, TextIO

import requests

from antnet.config import FleetConfig, Settings
from antnet.errors import AntnetError, ShutdownRequested
from antnet.fleet import NodeFleetLauncher
from antnet.ledger import LedgerConnection, LedgerLauncher
from antnet.monitor import LivenessMonitor
from antnet.process import ManagedProcess, ProcessGroup
from antnet.publisher import PublisherService
from antnet.readiness import CancelToken
from antnet.registry import RegistrationConverger, RegistryEntry
from antnet.report import format_report
from antnet.utils import fs
from antnet.validation import ConfigValidator, check_ports_available, local_ip_addresses

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass
class BringUpResult:
    fleet: FleetConfig
    ledger: LedgerConnection
    nodes: List[ManagedProcess]
    registered: List[RegistryEntry]
    bootstrap_list: List[str]
    bootstrap_url: str


class Supervisor:
    def __init__(
        self,
        settings: Settings,
        env: Optional[Mapping[str, str]] = None,
        local_addresses: Callable[[], Iterable[str]] = local_ip_addresses,
        session: Optional[requests.Session] = None,
        stdout: Optional[TextIO] = None,
    ):
        self.settings = settings
        self.env = env if env is not None else os.environ
        self.stdout = stdout or sys.stdout
        self.cancel = CancelToken()
        self.processes = ProcessGroup(settings.paths.logs_dir, settings.timeouts.terminate_grace_sec)
        self.validator = ConfigValidator(local_addresses)
        self.ledger_launcher = LedgerLauncher(settings, self.processes, self.cancel)
        self.fleet_launcher = NodeFleetLauncher(settings, self.processes, self.cancel)
        self.publisher = PublisherService(settings, self.processes, self.cancel, session)
        self.monitor = LivenessMonitor(
            self.processes,
            self.cancel,
            interval=settings.intervals.liveness_sec,
            on_abort=lambda _reason: self.cleanup(),
        )
        self.phase = "startup"
        self.result: Optional[BringUpResult] = None
        self._cleaned_up = False
        self._previous_handlers: Dict[int, object] = {}

    # ──────────────────────────────────────────────────────────────────────
    #  Signals
    # ──────────────────────────────────────────────────────────────────────

    def install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        atexit.register(self.cleanup)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        atexit.unregister(self.cleanup)

    def _handle_signal(self, signum, _frame) -> None:
        name = signal.Signals(signum).name
        logger.warning(f"⚠️ Received {name} during {self.phase}, shutting down…")
        self.cancel.cancel(f"received {name}")

    # ──────────────────────────────────────────────────────────────────────
    #  Bring-up
    # ──────────────────────────────────────────────────────────────────────

    def bring_up(self) -> BringUpResult:
        settings = self.settings

        self.phase = "validate"
        fleet = self.validator.validate(self.env)
        if settings.check_ports:
            check_ports_available(fleet)
        fs.purge_stale_state(settings.paths)

        self.phase = "ledger"
        ledger = self.ledger_launcher.launch(fleet)

        self.phase = "fleet"
        nodes = self.fleet_launcher.launch(fleet, ledger)

        self.phase = "registration"
        converger = RegistrationConverger(
            registry_path=settings.paths.registry,
            partial_path=settings.paths.partial_bootstrap_file,
            processes=self.processes,
            cancel=self.cancel,
            host_ip=fleet.external_ip,
            interval=settings.intervals.registration_poll_sec,
        )
        bootstrap_list = converger.await_convergence(fleet.ports, settings.timeouts.registration_sec)

        self.phase = "publisher"
        url = self.publisher.start(bootstrap_list, fleet.external_ip, fleet.bootstrap_port)

        self.result = BringUpResult(
            fleet=fleet,
            ledger=ledger,
            nodes=nodes,
            registered=list(converger.registered),
            bootstrap_list=bootstrap_list,
            bootstrap_url=url,
        )
        print(
            format_report(ledger, self.result.registered, bootstrap_list, url),
            file=self.stdout,
            flush=True,
        )
        return self.result

    def run(self) -> int:
        """Bring the testnet up and watch it. Returns the process exit status.

        0 only when a signal ends steady-state monitoring; 1 for every failure
        and for a signal that arrives before bring-up finished.
        """
        self.install_signal_handlers()
        try:
            self.bring_up()
            self.phase = "monitor"
            self.monitor.run()
            return EXIT_OK
        except ShutdownRequested as exc:
            logger.error(f"⛔ [{self.phase}] bring-up interrupted: {exc.reason}")
            return EXIT_FAILURE
        except AntnetError as exc:
            logger.error(f"❌ [{self.phase}] {type(exc).__name__}: {exc}")
            return EXIT_FAILURE
        except Exception as exc:
            logger.error(f"❌ [{self.phase}] unexpected {type(exc).__name__}: {exc}")
            logger.debug("Traceback:", exc_info=True)
            return EXIT_FAILURE
        finally:
            self.cleanup()
            self.restore_signal_handlers()

    # ──────────────────────────────────────────────────────────────────────
    #  Cleanup
    # ──────────────────────────────────────────────────────────────────────

    def cleanup(self) -> None:
        """Terminate every tracked child. Idempotent."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        if not len(self.processes):
            return
        logger.info("🧹  Cleaning up child processes …")
        self.processes.terminate_all()
        logger.info("✅ Process cleanup completed")
