from __future__ import annotations

import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Protocol

from bench_sampler.config import ClipSettings

logger = logging.getLogger(__name__)


class ClipCutter(Protocol):
    def is_available(self) -> bool: ...

    def cut_clip(self, path: str, start_ms: int, end_ms: int) -> bytes | None: ...


class FfmpegClipCutter:
    """Cut short H.264 MP4 clips with ffmpeg into uniquely named temp files."""

    def __init__(self, settings: ClipSettings, work_dir: str | Path) -> None:
        self.settings = settings
        self.work_dir = Path(work_dir)

    def is_available(self) -> bool:
        return self.settings.enabled and shutil.which(self.settings.ffmpeg_binary) is not None

    def cut_clip(self, path: str, start_ms: int, end_ms: int) -> bytes | None:
        if end_ms <= start_ms or not self.is_available():
            return None

        self.work_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.work_dir / f"cut_{time.time_ns()}.mp4"
        command = _clip_command(
            ffmpeg_binary=self.settings.ffmpeg_binary,
            source_path=path,
            start_ms=start_ms,
            end_ms=end_ms,
            preset=self.settings.preset,
            crf=self.settings.crf,
            output_path=output_path,
        )

        try:
            subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.settings.timeout_seconds,
            )
            data = output_path.read_bytes()
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            logger.debug("Clip cut %s-%sms failed for %s: %s", start_ms, end_ms, path, exc)
            return None
        finally:
            output_path.unlink(missing_ok=True)

        return data or None


def _clip_command(
    *,
    ffmpeg_binary: str,
    source_path: str,
    start_ms: int,
    end_ms: int,
    preset: str,
    crf: int,
    output_path: Path,
) -> list[str]:
    return [
        ffmpeg_binary,
        "-v",
        "error",
        "-y",
        "-ss",
        f"{start_ms / 1000:.3f}",
        "-t",
        f"{(end_ms - start_ms) / 1000:.3f}",
        "-i",
        source_path,
        "-c:v",
        "libx264",
        "-preset",
        preset,
        "-crf",
        str(crf),
        "-an",
        str(output_path),
    ]
