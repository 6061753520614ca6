# orchestrator.py

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from antnet.config import load_settings
from antnet.errors import ConfigError
from antnet.supervisor import EXIT_FAILURE, Supervisor

logger = logging.getLogger("orchestrator")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Bring up a local Autonomi testnet and supervise it.")
    p.add_argument("--config", type=Path, help="TOML file with a [tool.antnet] section")
    p.add_argument("--data-dir", type=Path, help="Root for ledger, node and export files")
    p.add_argument("--log-level", default=os.getenv("LOGLEVEL", "INFO"), help="Logging level (default: $LOGLEVEL or INFO)")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    try:
        settings = load_settings(args.config, args.data_dir)
    except ConfigError as exc:
        logger.error(f"❌ [settings] {exc}")
        return EXIT_FAILURE

    logger.info(f"Data directory: {settings.paths.data_dir}")
    return Supervisor(settings).run()


if __name__ == "__main__":
    sys.exit(main())
