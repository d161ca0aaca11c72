from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SHARED_LIBRARY_MARKERS = ("error while loading shared libraries", "cannot open shared object file")


def probe_duration_ms(media_path: str | Path, ffprobe_binary: str = "ffprobe", cv2_module: Any = None) -> int:
    """Best-effort media duration in milliseconds; 0 means unknown."""

    source_path = Path(media_path)
    try:
        payload = _run_ffprobe(source_path, ffprobe_binary=ffprobe_binary)
    except RuntimeError as exc:
        logger.warning("ffprobe duration lookup failed for %s: %s", source_path, exc)
    else:
        duration_ms = _duration_from_payload(payload)
        if duration_ms > 0:
            return duration_ms

    return _duration_from_capture(source_path, cv2_module=cv2_module)


def _run_ffprobe(media_path: Path, ffprobe_binary: str = "ffprobe") -> dict[str, Any]:
    command = [
        ffprobe_binary,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(media_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise RuntimeError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if any(marker in stderr for marker in _SHARED_LIBRARY_MARKERS):
            raise RuntimeError(
                "ffprobe is installed but failed to start because required shared libraries are missing. "
                f"ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise RuntimeError(f"ffprobe failed while probing media file: {media_path}.{details}") from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise RuntimeError("ffprobe returned invalid JSON output.") from exc


def _duration_from_payload(payload: dict[str, Any]) -> int:
    format_seconds = _to_float(payload.get("format", {}).get("duration"))
    if format_seconds and format_seconds > 0:
        return int(round(format_seconds * 1000))

    for stream in payload.get("streams", []):
        if stream.get("codec_type") != "video":
            continue
        stream_seconds = _to_float(stream.get("duration"))
        if stream_seconds and stream_seconds > 0:
            return int(round(stream_seconds * 1000))

    return 0


def _duration_from_capture(media_path: Path, cv2_module: Any = None) -> int:
    if cv2_module is None:
        import cv2 as cv2_module

    capture = cv2_module.VideoCapture(str(media_path))
    try:
        if not capture.isOpened():
            return 0
        fps = float(capture.get(cv2_module.CAP_PROP_FPS) or 0.0)
        frame_count = float(capture.get(cv2_module.CAP_PROP_FRAME_COUNT) or 0.0)
    finally:
        capture.release()

    if fps <= 0 or frame_count <= 0:
        return 0
    return int(round(frame_count / fps * 1000))


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    try:
        return float(raw_value)
    except (TypeError, ValueError):
        return None
