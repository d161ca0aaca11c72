from __future__ import annotations

import random

import pytest

from bench_sampler.config import GateSettings
from bench_sampler.features.motion_gate import detect_activity_window, detect_from_samples
from bench_sampler.models import ProbeSample


def _sizes_from_deltas(deltas: list[int], base: int = 1000) -> list[int]:
    sizes = [base]
    for index, delta in enumerate(deltas):
        sizes.append(sizes[-1] + (delta if index % 2 == 0 else -delta))
    return sizes


def _probe_times(count: int, step_ms: int = 400) -> list[int]:
    return [index * step_ms for index in range(count)]


def test_empty_probe_series_returns_fixed_fallback_window() -> None:
    window = detect_activity_window([], [], duration_ms=20000)

    assert (window.start_ms, window.end_ms) == (3000, 17000)
    assert window.confident is False
    assert window.rationale == "fallback_no_probe"


def test_misaligned_probe_series_returns_fixed_fallback_window() -> None:
    window = detect_activity_window([0, 400, 800], [1000, 1100], duration_ms=10000)

    assert (window.start_ms, window.end_ms) == (1500, 8500)
    assert window.rationale == "fallback_no_probe"


def test_short_motion_run_is_expanded_to_target_window() -> None:
    deltas = [50] * 39
    for index in range(10, 20):
        deltas[index] = 500

    window = detect_activity_window(_probe_times(40), _sizes_from_deltas(deltas), duration_ms=20000)

    assert (window.start_ms, window.end_ms) == (750, 12750)
    assert window.confident is False
    assert window.rationale == "expanded_for_bench_press_analysis"


def test_long_motion_run_is_confident() -> None:
    deltas = [40] * 99
    for index in range(10, 40):
        deltas[index] = 600

    window = detect_activity_window(_probe_times(100), _sizes_from_deltas(deltas), duration_ms=60000)

    assert window.confident is True
    assert window.rationale == "sustained_motion_detected"
    assert window.start_ms == 3000
    assert window.end_ms == 40 * 400 + 2500


def test_isolated_spikes_do_not_count_as_motion() -> None:
    deltas = [20] * 30
    deltas[5] = 900
    deltas[6] = 900
    deltas[20] = 900

    window = detect_activity_window(_probe_times(31), _sizes_from_deltas(deltas), duration_ms=40000)

    assert (window.start_ms, window.end_ms) == (6000, 34000)
    assert window.rationale == "no_sustained_motion"
    assert window.confident is False


def test_window_is_clamped_to_short_duration() -> None:
    deltas = [50, 50, 500, 500, 500, 50, 50, 50, 50]

    window = detect_activity_window(_probe_times(10), _sizes_from_deltas(deltas), duration_ms=4000)

    assert window.start_ms == 0
    assert window.end_ms == 4000
    assert 0 <= window.start_ms <= window.end_ms <= 4000


def test_window_bounds_hold_for_zero_duration() -> None:
    window = detect_activity_window([0, 400, 800, 1200, 1600], [1000, 1600, 1000, 1600, 1000], duration_ms=0)

    assert (window.start_ms, window.end_ms) == (0, 0)


def test_thresholds_are_tunable() -> None:
    deltas = [50] * 39
    for index in range(10, 20):
        deltas[index] = 500
    settings = GateSettings(min_window_ms=5000)

    window = detect_activity_window(_probe_times(40), _sizes_from_deltas(deltas), 20000, settings)

    assert (window.start_ms, window.end_ms) == (3000, 10500)
    assert window.confident is True


def test_detect_from_samples_orders_by_timestamp() -> None:
    deltas = [50] * 39
    for index in range(10, 20):
        deltas[index] = 500
    samples = [
        ProbeSample(timestamp_ms=timestamp_ms, byte_size=size)
        for timestamp_ms, size in zip(_probe_times(40), _sizes_from_deltas(deltas))
    ]

    window = detect_from_samples(list(reversed(samples)), duration_ms=20000)

    assert (window.start_ms, window.end_ms) == (750, 12750)


@pytest.mark.parametrize("seed", range(12))
def test_window_always_lies_inside_video(seed: int) -> None:
    rng = random.Random(seed)
    duration_ms = rng.choice([0, 900, 4000, 20000, 95000])
    count = rng.randint(0, 80)
    times = sorted(rng.sample(range(0, max(duration_ms, 1) + 1), k=min(count, max(duration_ms, 1) + 1)))
    sizes = [rng.choice([rng.randint(900, 1100), rng.randint(0, 4000)]) for _ in times]
    if rng.random() < 0.2 and sizes:
        sizes = sizes[:-1]

    window = detect_activity_window(times, sizes, duration_ms)

    assert 0 <= window.start_ms <= window.end_ms <= duration_ms
    assert window.rationale in {
        "fallback_no_probe",
        "no_sustained_motion",
        "expanded_for_bench_press_analysis",
        "sustained_motion_detected",
    }
    assert window.confident == (window.rationale == "sustained_motion_detected")
