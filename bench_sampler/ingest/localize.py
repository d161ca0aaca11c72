from __future__ import annotations

import errno
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable

from bench_sampler.config import StorageSettings
from bench_sampler.errors import MediaAccessError, StorageExhaustedError
from bench_sampler.ingest.probe import probe_duration_ms
from bench_sampler.models import MediaReference

logger = logging.getLogger(__name__)

FILE_URL_PREFIX = "file://"


def resolve_media(
    reference: str | Path,
    settings: StorageSettings,
    duration_probe: Callable[[str], int] = probe_duration_ms,
) -> MediaReference:
    """Return a local, readable copy of ``reference`` plus its duration estimate."""

    source_path = _normalize_reference(reference)
    if not source_path.is_file() or not os.access(source_path, os.R_OK):
        raise MediaAccessError(f"cannot access media: {source_path}")

    local_path = source_path
    if settings.copy_to_cache:
        local_path = _copy_into_cache(source_path, settings)

    duration_ms = max(int(duration_probe(str(local_path)) or 0), 0)
    logger.info("Localized %s -> %s (duration=%sms)", source_path, local_path, duration_ms)
    return MediaReference(path=str(local_path), duration_ms=duration_ms, source=str(source_path))


def ensure_writable(directory: Path, estimated_bytes: int, settings: StorageSettings) -> None:
    """Raise ``StorageExhaustedError`` when ``directory`` cannot take ``estimated_bytes`` more."""

    directory.mkdir(parents=True, exist_ok=True)
    needed = max(estimated_bytes, 0) + settings.headroom_bytes

    free_bytes = shutil.disk_usage(directory).free
    if free_bytes < needed:
        raise StorageExhaustedError(
            f"Not enough free storage in {directory}: need {needed} bytes, {free_bytes} available."
        )

    probe_path = directory / f"__probe_{time.time_ns()}.bin"
    try:
        probe_path.write_bytes(b"\0" * settings.probe_write_bytes)
    except OSError as exc:
        raise _storage_error(exc, f"Cannot write to cache directory {directory}") from exc
    finally:
        probe_path.unlink(missing_ok=True)


def _normalize_reference(reference: str | Path) -> Path:
    raw = str(reference)
    if raw.startswith(FILE_URL_PREFIX):
        raw = raw[len(FILE_URL_PREFIX) :]
    return Path(raw).expanduser().resolve()


def _copy_into_cache(source_path: Path, settings: StorageSettings) -> Path:
    localized_dir = Path(settings.cache_dir).expanduser().resolve() / "localized"
    try:
        source_size = source_path.stat().st_size
    except OSError as exc:
        raise MediaAccessError(f"cannot access media: {source_path} ({exc})") from exc

    ensure_writable(localized_dir, source_size, settings)

    suffix = source_path.suffix or ".mp4"
    target_path = localized_dir / f"vid_{time.time_ns()}{suffix}"
    try:
        shutil.copyfile(source_path, target_path)
    except OSError as exc:
        target_path.unlink(missing_ok=True)
        raise _storage_error(exc, f"cannot access media: failed to copy {source_path}") from exc
    return target_path


def _storage_error(exc: OSError, message: str) -> MediaAccessError | StorageExhaustedError:
    if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        return StorageExhaustedError(f"{message}: device storage is full.")
    return MediaAccessError(f"{message}: {exc}")
