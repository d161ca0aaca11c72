from __future__ import annotations

import base64
from dataclasses import asdict
from typing import Any

from bench_sampler.models import SamplingResult


def encode_payload(result: SamplingResult) -> dict[str, Any]:
    """Build the JSON-ready request body handed to the scoring client."""

    frames = [_b64(frame.data) for frame in [*result.anchors, *result.frames]]
    clips = [_b64(clip.data) for clip in result.clips]
    total_bytes = sum(len(item) for item in frames) + sum(len(item) for item in clips)

    return {
        "frames_base64_jpeg": frames,
        "snippets_base64_mp4": clips,
        "frame_timestamps_ms": [frame.timestamp_ms for frame in [*result.anchors, *result.frames]],
        "snippet_ranges_ms": [[clip.start_ms, clip.end_ms] for clip in result.clips],
        "approx_total_base64_bytes": total_bytes,
        "request_hints": {
            "pipeline": result.diagnostics.strategy,
            "gate_confident": result.gate.confident,
            "gate_rationale": result.gate.rationale,
            "trimmed_window_ms": result.gate.span_ms,
        },
    }


def summarize(result: SamplingResult) -> dict[str, Any]:
    """Byte-free view of a result for logs and CLI output."""

    return {
        "status": "ok",
        "anchor_count": len(result.anchors),
        "frame_count": len(result.frames),
        "clip_count": len(result.clips),
        "gate": asdict(result.gate),
        "diagnostics": asdict(result.diagnostics),
    }


def _b64(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")
