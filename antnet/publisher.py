from __future__ import annotations

import logging
from typing import Optional, Sequence

import requests

from antnet.config import Settings
from antnet.process import ManagedProcess, ProcessGroup
from antnet.readiness import CancelToken, wait_until
from antnet.utils import fs

logger = logging.getLogger(__name__)

BOOTSTRAP_FILENAME = "bootstrap.txt"


def bootstrap_url(external_ip: str, port: int) -> str:
    host = f"[{external_ip}]" if ":" in external_ip else external_ip
    return f"http://{host}:{port}/{BOOTSTRAP_FILENAME}"


class PublisherService:
    """Serve the bootstrap list over HTTP with a static file server child."""

    def __init__(
        self,
        settings: Settings,
        processes: ProcessGroup,
        cancel: CancelToken,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.processes = processes
        self.cancel = cancel
        self.session = session or requests.Session()
        self.proc: Optional[ManagedProcess] = None

    def command(self, port: int) -> list:
        return list(self.settings.commands.publisher) + [
            str(self.settings.paths.export_dir),
            "--port", str(port),
            "--no-listing",
        ]

    def start(self, bootstrap_list: Sequence[str], external_ip: str, port: int) -> str:
        paths = self.settings.paths
        fs.write_lines(paths.bootstrap_file, bootstrap_list)
        logger.info(f"Wrote {len(bootstrap_list)} address(es) to {paths.bootstrap_file}")

        self.proc = self.processes.spawn("publisher", self.command(port), role="publisher", port=port)
        self.processes.confirm_started(self.proc, self.settings.timeouts.startup_grace_sec, self.cancel)

        url = bootstrap_url(external_ip, port)
        if self.settings.verify_publisher:
            self.wait_until_served(url)
        logger.info(f"✅ Bootstrap list published at {url}")
        return url

    def wait_until_served(self, url: str) -> None:
        """Poll ``url`` until it answers 200, failing fast if the publisher dies."""
        wait_until(
            lambda: self._served(url),
            timeout=self.settings.timeouts.publisher_ready_sec,
            interval=self.settings.intervals.ledger_poll_sec,
            what=url,
            cancel=self.cancel,
            on_tick=lambda: self.processes.ensure_alive([self.proc]),
        )

    def _served(self, url: str) -> bool:
        try:
            response = self.session.get(url, timeout=2)
        except requests.RequestException as exc:
            logger.debug(f"{url} not reachable yet: {exc}")
            return False
        return response.status_code == 200
