from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class ThumbnailProvider(Protocol):
    def extract_frame(
        self,
        path: str,
        timestamp_ms: int,
        quality: int,
        max_width: int | None = None,
    ) -> bytes | None:
        """Return a JPEG near ``timestamp_ms`` or ``None`` when extraction fails."""


class OpenCvThumbnailProvider:
    """Seek-and-encode thumbnails through OpenCV, one cached capture per path.

    Timestamps are approximate: ``CAP_PROP_POS_MSEC`` seeks land on the
    nearest decodable frame. Instances are picklable so they can be shipped to
    a worker process; open captures are not carried across and get reopened
    lazily on the other side.
    """

    def __init__(self, cv2_module: Any = None) -> None:
        self._cv2 = cv2_module
        self._captures: dict[str, Any] = {}

    def extract_frame(
        self,
        path: str,
        timestamp_ms: int,
        quality: int,
        max_width: int | None = None,
    ) -> bytes | None:
        cv2 = self._module()
        cv2_error = getattr(cv2, "error", RuntimeError)

        capture = self._capture_for(path)
        if capture is None:
            return None

        try:
            capture.set(cv2.CAP_PROP_POS_MSEC, float(max(timestamp_ms, 0)))
            ok, frame = capture.read()
            if not ok or frame is None:
                return None
            frame = _resize_for_width(frame=frame, max_width=max_width or 0, cv2_module=cv2)
            encoded_ok, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
        except (cv2_error, ValueError, OSError) as exc:
            logger.debug("Thumbnail extraction failed at %sms for %s: %s", timestamp_ms, path, exc)
            return None

        if not encoded_ok:
            return None
        data = buffer.tobytes()
        return data or None

    def close(self) -> None:
        for capture in self._captures.values():
            if capture is not None:
                capture.release()
        self._captures.clear()

    def __enter__(self) -> "OpenCvThumbnailProvider":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __getstate__(self) -> dict[str, Any]:
        return {"_cv2": None, "_captures": {}}

    def __setstate__(self, state: dict[str, Any]) -> None:
        self._cv2 = state.get("_cv2")
        self._captures = {}

    def _module(self) -> Any:
        if self._cv2 is None:
            import cv2

            self._cv2 = cv2
        return self._cv2

    def _capture_for(self, path: str) -> Any:
        if path in self._captures:
            return self._captures[path]

        cv2 = self._module()
        capture = cv2.VideoCapture(path)
        if not capture.isOpened():
            capture.release()
            logger.warning("OpenCV could not open %s", path)
            capture = None
        self._captures[path] = capture
        return capture


def _resize_for_width(frame: Any, max_width: int, cv2_module: Any) -> Any:
    if max_width <= 0:
        return frame

    height, width = frame.shape[:2]
    if width <= max_width:
        return frame

    scale = max_width / float(width)
    target_height = max(int(round(height * scale)), 1)
    return cv2_module.resize(frame, (max_width, target_height), interpolation=cv2_module.INTER_AREA)
