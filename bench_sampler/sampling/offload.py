from __future__ import annotations

import asyncio
import logging
import multiprocessing
import pickle
import traceback
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Iterable, TypeVar

from bench_sampler.config import LoggingSettings
from bench_sampler.errors import WorkerCrashError
from bench_sampler.logging_config import configure_logging

logger = logging.getLogger(__name__)

I = TypeVar("I")
O = TypeVar("O")
T = TypeVar("T")

# Raised by the executor while pickling the call or its result; worker-side errors arrive as outcomes.
_TRANSPORT_ERRORS = (pickle.PicklingError, TypeError, AttributeError)


@dataclass(slots=True)
class WorkerOutcome:
    """Exactly one of these crosses back over the one-shot channel."""

    value: Any = None
    error_type: str | None = None
    message: str | None = None
    details: str | None = None

    @property
    def failed(self) -> bool:
        return self.error_type is not None


def run_in_worker(
    fn: Callable[[I], O],
    payload: I,
    *,
    start_method: str = "spawn",
    timeout: float | None = None,
    log_level: str = "INFO",
) -> O:
    """Run ``fn(payload)`` in a fresh single-use worker process and return its result.

    ``fn`` and ``payload`` must be picklable. Any exception raised in the
    worker, a worker that dies, or a timeout surfaces as ``WorkerCrashError``.
    """

    context = multiprocessing.get_context(start_method)
    executor = ProcessPoolExecutor(
        max_workers=1,
        mp_context=context,
        initializer=configure_logging,
        initargs=(LoggingSettings(level=log_level),),
    )
    return _dispatch(executor, fn, payload, timeout=timeout, label="process")


def run_in_thread(fn: Callable[[I], O], payload: I, *, timeout: float | None = None) -> O:
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bench-sampler")
    return _dispatch(executor, fn, payload, timeout=timeout, label="thread")


def run_inline(fn: Callable[[I], O], payload: I) -> O:
    return _unwrap(_worker_entry(fn, payload))


async def run_in_worker_async(
    fn: Callable[[I], O],
    payload: I,
    *,
    start_method: str = "spawn",
    timeout: float | None = None,
    log_level: str = "INFO",
) -> O:
    """Awaitable form of ``run_in_worker``; the event loop stays free meanwhile."""

    context = multiprocessing.get_context(start_method)
    loop = asyncio.get_running_loop()
    executor = ProcessPoolExecutor(
        max_workers=1,
        mp_context=context,
        initializer=configure_logging,
        initargs=(LoggingSettings(level=log_level),),
    )
    try:
        outcome = await asyncio.wait_for(loop.run_in_executor(executor, _worker_entry, fn, payload), timeout)
    except BrokenProcessPool as exc:
        raise WorkerCrashError("Sampling worker process died unexpectedly.", error_type=type(exc).__name__) from exc
    except asyncio.TimeoutError as exc:
        raise WorkerCrashError(f"Sampling worker did not finish within {timeout}s.", error_type="TimeoutError") from exc
    except _TRANSPORT_ERRORS as exc:
        raise _transport_error(exc) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return _unwrap(outcome)


async def run_in_thread_async(fn: Callable[[I], O], payload: I) -> O:
    outcome = await asyncio.to_thread(_worker_entry, fn, payload)
    return _unwrap(outcome)


async def cooperative(items: Iterable[T], every: int) -> AsyncIterator[T]:
    """Yield ``items`` and hand control back to the event loop after every ``every`` of them.

    Weaker than a worker process: a single slow item still blocks the loop.
    """

    every = max(every, 1)
    for index, item in enumerate(items, start=1):
        yield item
        if index % every == 0:
            await asyncio.sleep(0)


def _worker_entry(fn: Callable[[Any], Any], payload: Any) -> WorkerOutcome:
    try:
        return WorkerOutcome(value=fn(payload))
    except Exception as exc:
        return WorkerOutcome(
            error_type=type(exc).__name__,
            message=str(exc),
            details=traceback.format_exc(),
        )


def _dispatch(executor: Executor, fn: Callable[[Any], Any], payload: Any, *, timeout: float | None, label: str) -> Any:
    # A timed-out worker is abandoned, not killed; it exits once its call returns.
    timed_out = False
    future = executor.submit(_worker_entry, fn, payload)
    try:
        outcome = future.result(timeout=timeout)
    except BrokenProcessPool as exc:
        raise WorkerCrashError("Sampling worker process died unexpectedly.", error_type=type(exc).__name__) from exc
    except FutureTimeoutError as exc:
        timed_out = True
        raise WorkerCrashError(f"Sampling {label} did not finish within {timeout}s.", error_type="TimeoutError") from exc
    except _TRANSPORT_ERRORS as exc:
        raise _transport_error(exc) from exc
    finally:
        executor.shutdown(wait=not timed_out, cancel_futures=True)
    return _unwrap(outcome)


def _transport_error(exc: Exception) -> WorkerCrashError:
    logger.error("Sampling job could not cross the worker boundary: %s", exc)
    return WorkerCrashError(
        f"Sampling job could not be sent to the worker: {type(exc).__name__}: {exc}",
        error_type=type(exc).__name__,
    )


def _unwrap(outcome: WorkerOutcome) -> Any:
    if outcome.failed:
        logger.error("Sampling worker failed with %s: %s", outcome.error_type, outcome.message)
        raise WorkerCrashError(
            f"Sampling worker failed: {outcome.error_type}: {outcome.message}",
            error_type=outcome.error_type,
            details=outcome.details,
        )
    return outcome.value
