from __future__ import annotations

from typing import Sequence

import numpy as np

from bench_sampler.config import GateSettings
from bench_sampler.models import (
    RATIONALE_EXPANDED,
    RATIONALE_FALLBACK_NO_PROBE,
    RATIONALE_NO_SUSTAINED_MOTION,
    RATIONALE_SUSTAINED_MOTION,
    ActivityWindow,
    ProbeSample,
)


def detect_activity_window(
    probe_times_ms: Sequence[int],
    jpeg_sizes: Sequence[int],
    duration_ms: int,
    settings: GateSettings | None = None,
) -> ActivityWindow:
    """Locate the working set from low-quality JPEG byte-size deltas.

    Byte-size deltas stand in for pixel motion without decoding. A run of
    ``min_streak`` consecutive deltas at or above the threshold marks motion,
    which suppresses single-frame compression spikes. The start backs off to
    include the setup posture and the end adds a cooldown for racking the bar.
    Never raises: every branch returns a clamped window with a rationale.
    """

    settings = settings or GateSettings()
    duration_ms = max(int(duration_ms), 0)

    if len(probe_times_ms) == 0 or len(probe_times_ms) != len(jpeg_sizes):
        return _fallback_window(duration_ms, settings, RATIONALE_FALLBACK_NO_PROBE)

    times = [int(t) for t in probe_times_ms]
    deltas = np.abs(np.diff(np.asarray(jpeg_sizes, dtype=np.float64)))
    median = float(np.median(deltas)) if deltas.size else 0.0
    threshold = max(settings.min_threshold, median * settings.median_multiplier)
    above = [bool(value >= threshold) for value in deltas]

    start_index = _first_run_start(above, settings.min_streak)
    if start_index is None:
        return _fallback_window(duration_ms, settings, RATIONALE_NO_SUSTAINED_MOTION)

    start_ms = max(0, times[start_index] - settings.start_backoff_ms)

    end_index = _last_run_end(above, settings.min_streak)
    if end_index is not None:
        end_ms = times[min(end_index, len(times) - 1)] + settings.end_cooldown_ms
    else:
        end_ms = int(duration_ms * settings.missing_end_fraction)
    end_ms = min(duration_ms, end_ms)

    span_ms = end_ms - start_ms
    if span_ms < settings.min_window_ms:
        expansion = (settings.target_window_ms - span_ms) // 2
        return _clamped(
            start_ms - expansion,
            end_ms + expansion,
            duration_ms,
            confident=False,
            rationale=RATIONALE_EXPANDED,
        )

    return _clamped(start_ms, end_ms, duration_ms, confident=True, rationale=RATIONALE_SUSTAINED_MOTION)


def detect_from_samples(
    samples: Sequence[ProbeSample],
    duration_ms: int,
    settings: GateSettings | None = None,
) -> ActivityWindow:
    ordered = sorted(samples, key=lambda sample: sample.timestamp_ms)
    return detect_activity_window(
        [sample.timestamp_ms for sample in ordered],
        [sample.byte_size for sample in ordered],
        duration_ms,
        settings,
    )


def _first_run_start(above: list[bool], min_streak: int) -> int | None:
    streak = 0
    for index, is_above in enumerate(above):
        if not is_above:
            streak = 0
            continue
        streak += 1
        if streak >= min_streak:
            return index - streak + 1
    return None


def _last_run_end(above: list[bool], min_streak: int) -> int | None:
    # Delta i spans probes i and i+1, so a run ending at delta i ends at probe i+1.
    streak = 0
    for index in range(len(above) - 1, -1, -1):
        if not above[index]:
            streak = 0
            continue
        streak += 1
        if streak >= min_streak:
            return index + streak
    return None


def _fallback_window(duration_ms: int, settings: GateSettings, rationale: str) -> ActivityWindow:
    return _clamped(
        int(duration_ms * settings.fallback_start_fraction),
        int(duration_ms * settings.fallback_end_fraction),
        duration_ms,
        confident=False,
        rationale=rationale,
    )


def _clamped(start_ms: int, end_ms: int, duration_ms: int, *, confident: bool, rationale: str) -> ActivityWindow:
    start_ms = min(max(0, int(start_ms)), duration_ms)
    end_ms = min(max(start_ms, int(end_ms)), duration_ms)
    return ActivityWindow(start_ms=start_ms, end_ms=end_ms, confident=confident, rationale=rationale)
