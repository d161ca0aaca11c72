from __future__ import annotations

import base64
import json

from bench_sampler.models import ActivityWindow, SampledClip, SampledFrame, SamplingDiagnostics, SamplingResult
from bench_sampler.payload import encode_payload, summarize


def _result() -> SamplingResult:
    gate = ActivityWindow(start_ms=750, end_ms=12750, confident=False, rationale="expanded_for_bench_press_analysis")
    diagnostics = SamplingDiagnostics(
        strategy="motion_gate_process",
        duration_ms=20000,
        raw_duration_ms=20000,
        elapsed_ms=812,
        window_start_ms=750,
        window_end_ms=12750,
        window_ms=12000,
        gate_confident=False,
        gate_rationale="expanded_for_bench_press_analysis",
    )
    return SamplingResult(
        anchors=[SampledFrame(data=b"anchor", timestamp_ms=2750)],
        frames=[SampledFrame(data=b"f1", timestamp_ms=800), SampledFrame(data=b"f2", timestamp_ms=900)],
        clips=[SampledClip(data=b"clip", start_ms=4000, end_ms=4900)],
        gate=gate,
        diagnostics=diagnostics,
    )


def test_encode_payload_puts_anchors_first_and_counts_base64_bytes() -> None:
    payload = encode_payload(_result())

    assert [base64.b64decode(item) for item in payload["frames_base64_jpeg"]] == [b"anchor", b"f1", b"f2"]
    assert payload["frame_timestamps_ms"] == [2750, 800, 900]
    assert payload["snippets_base64_mp4"] == [base64.b64encode(b"clip").decode("ascii")]
    assert payload["snippet_ranges_ms"] == [[4000, 4900]]
    assert payload["approx_total_base64_bytes"] == 8 + 4 + 4 + 8
    assert payload["request_hints"] == {
        "pipeline": "motion_gate_process",
        "gate_confident": False,
        "gate_rationale": "expanded_for_bench_press_analysis",
        "trimmed_window_ms": 12000,
    }
    json.dumps(payload)


def test_summarize_is_byte_free_and_serializable() -> None:
    summary = summarize(_result())

    assert summary["anchor_count"] == 1
    assert summary["frame_count"] == 2
    assert summary["clip_count"] == 1
    assert summary["gate"]["start_ms"] == 750
    assert summary["diagnostics"]["window_ms"] == 12000
    assert "frames_base64_jpeg" not in json.dumps(summary)
