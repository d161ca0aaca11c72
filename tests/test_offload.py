from __future__ import annotations

import asyncio
import threading
import time

import pytest

from bench_sampler.errors import WorkerCrashError
from bench_sampler.sampling import offload


def test_run_inline_returns_value() -> None:
    assert offload.run_inline(sorted, [3, 1, 2]) == [1, 2, 3]


def test_run_inline_wraps_exceptions_with_type_and_traceback() -> None:
    with pytest.raises(WorkerCrashError) as excinfo:
        offload.run_inline(int, "not a number")

    assert excinfo.value.error_type == "ValueError"
    assert "Traceback" in (excinfo.value.details or "")
    assert "invalid literal" in str(excinfo.value)


def test_run_in_thread_returns_value_and_wraps_errors() -> None:
    assert offload.run_in_thread(sum, [1, 2, 3]) == 6

    with pytest.raises(WorkerCrashError, match="ZeroDivisionError"):
        offload.run_in_thread(lambda value: value / 0, 1)


def test_run_in_thread_times_out() -> None:
    with pytest.raises(WorkerCrashError, match="did not finish") as excinfo:
        offload.run_in_thread(time.sleep, 0.5, timeout=0.05)

    assert excinfo.value.error_type == "TimeoutError"


def test_run_in_worker_runs_in_separate_process() -> None:
    assert offload.run_in_worker(sorted, [5, 4, 3], timeout=60) == [3, 4, 5]


def test_run_in_worker_reports_worker_exceptions() -> None:
    with pytest.raises(WorkerCrashError) as excinfo:
        offload.run_in_worker(int, "nope", timeout=60)

    assert excinfo.value.error_type == "ValueError"
    assert "invalid literal" in str(excinfo.value)


def test_async_offloads_return_values() -> None:
    assert asyncio.run(offload.run_in_thread_async(sorted, [2, 1])) == [1, 2]
    assert asyncio.run(offload.run_in_worker_async(sorted, [9, 7, 8], timeout=60)) == [7, 8, 9]


def test_async_thread_offload_wraps_errors() -> None:
    with pytest.raises(WorkerCrashError, match="KeyError"):
        asyncio.run(offload.run_in_thread_async(lambda data: data["missing"], {}))


def test_cooperative_yields_to_event_loop_every_batch(monkeypatch: pytest.MonkeyPatch) -> None:
    ticks: list[int] = []
    original_sleep = asyncio.sleep

    async def _recording_sleep(delay: float) -> None:
        ticks.append(len(seen))
        await original_sleep(delay)

    seen: list[int] = []

    async def _collect() -> None:
        async for item in offload.cooperative(range(12), every=5):
            seen.append(item)

    monkeypatch.setattr(offload.asyncio, "sleep", _recording_sleep)
    asyncio.run(_collect())

    assert seen == list(range(12))
    assert ticks == [5, 10]


def test_run_in_worker_rejects_unpicklable_payload() -> None:
    with pytest.raises(WorkerCrashError, match="could not be sent to the worker") as excinfo:
        offload.run_in_worker(sorted, threading.Lock(), timeout=60)

    assert excinfo.value.error_type == "TypeError"


def test_run_in_worker_async_rejects_unpicklable_callable() -> None:
    with pytest.raises(WorkerCrashError, match="could not be sent to the worker"):
        asyncio.run(offload.run_in_worker_async(lambda value: value, 1, timeout=60))
