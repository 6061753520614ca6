import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable

from antnet.config import PathSettings

logger = logging.getLogger(__name__)


def node_dir(paths: PathSettings, port: int) -> Path:
    """Return <data>/nodes/node_<port> and ensure it exists."""
    d = paths.nodes_dir / f"node_{port}"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_logs_dir(paths: PathSettings) -> Path:
    """Get or create the directory holding child stdout/stderr files."""
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    return paths.logs_dir


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        logger.debug(f"Removed stale directory {path}")
    elif path.exists() or path.is_symlink():
        path.unlink()
        logger.debug(f"Removed stale file {path}")


def purge_stale_state(paths: PathSettings) -> None:
    """Delete everything a previous run left behind and recreate an empty export dir.

    Readiness is signalled by file existence, so a leftover ledger record or
    cache would satisfy a wait before the new children wrote anything.
    """
    paths.data_dir.mkdir(parents=True, exist_ok=True)
    # the cache dir goes as a whole, unless the cache sits directly in the data root
    cache = paths.leader_cache.parent if paths.leader_cache.parent != paths.data_dir else paths.leader_cache
    for stale in (
        paths.ledger_record,
        cache,
        paths.registry,
        paths.nodes_dir,
        paths.diagnostics_dir,
        paths.export_dir,
    ):
        _remove(stale)
    paths.export_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Purged stale state under {paths.data_dir}")


def write_lines(path: Path, lines: Iterable[str]) -> Path:
    """Write newline-delimited lines atomically (temp file in the same dir + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = "".join(f"{line}\n" for line in lines)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path
