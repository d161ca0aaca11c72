from __future__ import annotations

import os
import time
from pathlib import Path

from bench_sampler.ingest.cache import purge_stale_files


def test_purge_stale_files_removes_only_old_files(tmp_path: Path) -> None:
    now = time.time()
    old_file = tmp_path / "localized" / "vid_1.mp4"
    fresh_file = tmp_path / "work" / "cut_2.mp4"
    for path in (old_file, fresh_file):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x")
    os.utime(old_file, (now - 9 * 3600, now - 9 * 3600))

    removed = purge_stale_files(tmp_path, older_than_hours=8.0, now=now)

    assert removed == [old_file.resolve()]
    assert not old_file.exists()
    assert fresh_file.exists()
    assert old_file.parent.is_dir()


def test_purge_stale_files_ignores_missing_directory(tmp_path: Path) -> None:
    assert purge_stale_files(tmp_path / "nope") == []
