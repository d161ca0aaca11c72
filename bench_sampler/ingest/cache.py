from __future__ import annotations

import logging
import time
from pathlib import Path

logger = logging.getLogger(__name__)


def purge_stale_files(cache_dir: str | Path, older_than_hours: float = 8.0, now: float | None = None) -> list[Path]:
    """Delete regular files under ``cache_dir`` whose mtime is older than the cutoff."""

    root = Path(cache_dir).expanduser().resolve()
    if not root.is_dir():
        return []

    cutoff = (time.time() if now is None else now) - older_than_hours * 3600.0
    removed: list[Path] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        try:
            if path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
        except OSError as exc:
            logger.warning("Could not purge stale cache file %s (%s)", path, exc)
            continue
        removed.append(path)

    logger.info("Purged %d stale file(s) from %s", len(removed), root)
    return removed
