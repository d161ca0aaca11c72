from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter
from typing import Callable

from bench_sampler.config import Settings
from bench_sampler.errors import MediaAccessError, SamplingCancelledError, SamplingError, UnreadableMediaError
from bench_sampler.features.clips import ClipCutter, FfmpegClipCutter
from bench_sampler.features.motion_gate import detect_from_samples
from bench_sampler.features.thumbnails import OpenCvThumbnailProvider, ThumbnailProvider
from bench_sampler.ingest.localize import resolve_media
from bench_sampler.models import (
    ActivityWindow,
    MediaReference,
    PipelineState,
    ProbeSample,
    SamplerOutput,
    SamplingDiagnostics,
    SamplingResult,
)
from bench_sampler.sampling import offload
from bench_sampler.sampling.sampler import SamplerJob, sample_window

logger = logging.getLogger(__name__)

Resolver = Callable[[str | Path], MediaReference]
ProviderFactory = Callable[[], ThumbnailProvider]


class CancellationToken:
    """Thread-safe cancel flag checked at every state transition and between probes.

    A dispatched sampling worker is not interrupted; the run finishes and the
    caller is expected to discard the result.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, state: PipelineState) -> None:
        if self._event.is_set():
            raise SamplingCancelledError(f"Sampling cancelled before {state.value}.")


@dataclass(slots=True)
class _RunState:
    token: CancellationToken
    provider: ThumbnailProvider
    state: PipelineState = PipelineState.RESOLVING
    started_at: float = field(default_factory=perf_counter)
    raw_duration_ms: int = 0
    probe_count: int = 0
    probe_failures: int = 0

    def enter(self, state: PipelineState) -> None:
        self.token.raise_if_cancelled(state)
        logger.debug("Sampling run %s -> %s", self.state.value, state.value)
        self.state = state

    def elapsed_ms(self) -> int:
        return int((perf_counter() - self.started_at) * 1000)


class SamplingPipeline:
    """Resolve -> probe -> gate -> sample, returning a never-empty ``SamplingResult``.

    Every call to ``sample``/``sample_async``/``detect_window`` owns its own run
    state and its own thumbnail provider from ``provider_factory``; the
    provider is released when the run ends, so one pipeline instance may serve
    several runs at once.
    """

    def __init__(
        self,
        settings: Settings,
        provider_factory: ProviderFactory | None = None,
        clip_cutter: ClipCutter | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self.settings = settings
        self.provider_factory = provider_factory or OpenCvThumbnailProvider
        if clip_cutter is None:
            work_dir = Path(settings.storage.cache_dir).expanduser().resolve() / "work"
            clip_cutter = FfmpegClipCutter(settings.clips, work_dir=work_dir)
        self.clip_cutter = clip_cutter
        self.resolver = resolver or (lambda reference: resolve_media(reference, settings.storage))

    def sample(
        self,
        reference: str | Path | MediaReference,
        cancel_token: CancellationToken | None = None,
    ) -> SamplingResult:
        run = self._new_run(cancel_token)
        try:
            media, duration_ms, window = self._probe_and_gate(reference, run)

            run.enter(PipelineState.SAMPLING)
            output = self._dispatch(self._job(media, duration_ms, window, run))
            return self._finish(output, window, duration_ms, run)
        except SamplingError as exc:
            self._fail(run, exc)
            raise
        finally:
            _release(run.provider)

    def detect_window(
        self,
        reference: str | Path | MediaReference,
        cancel_token: CancellationToken | None = None,
    ) -> tuple[MediaReference, ActivityWindow]:
        """Resolve, probe and gate without sampling."""

        run = self._new_run(cancel_token)
        try:
            media, _, window = self._probe_and_gate(reference, run)
        except SamplingError as exc:
            self._fail(run, exc)
            raise
        finally:
            _release(run.provider)
        run.state = PipelineState.DONE
        return media, window

    async def sample_async(
        self,
        reference: str | Path | MediaReference,
        cancel_token: CancellationToken | None = None,
    ) -> SamplingResult:
        """Event-loop friendly ``sample``: probing yields cooperatively, sampling is offloaded."""

        run = self._new_run(cancel_token)
        try:
            media = await asyncio.to_thread(self._resolve, reference, run)
            duration_ms = self._effective_duration(media, run)

            run.enter(PipelineState.PROBING)
            samples: list[ProbeSample] = []
            async for timestamp_ms in offload.cooperative(self.probe_timestamps(duration_ms), self.settings.probe.yield_every):
                run.token.raise_if_cancelled(PipelineState.GATING)
                self._collect_probe(media.path, timestamp_ms, samples, run)

            window = self._gate(samples, duration_ms, run)

            run.enter(PipelineState.SAMPLING)
            output = await self._dispatch_async(self._job(media, duration_ms, window, run))
            return self._finish(output, window, duration_ms, run)
        except SamplingError as exc:
            self._fail(run, exc)
            raise
        finally:
            _release(run.provider)

    def _new_run(self, cancel_token: CancellationToken | None) -> _RunState:
        return _RunState(token=cancel_token or CancellationToken(), provider=self.provider_factory())

    def probe_timestamps(self, duration_ms: int) -> list[int]:
        """Head pass over the first ``head_budget_ms`` plus a tail pass over the last ``tail_budget_ms``."""

        probe = self.settings.probe
        head_end = min(duration_ms, probe.head_budget_ms)
        timestamps = list(range(0, head_end + 1, probe.step_ms))

        if probe.tail_budget_ms > 0 and duration_ms > head_end + probe.step_ms:
            tail_start = max(timestamps[-1] + probe.step_ms, duration_ms - probe.tail_budget_ms)
            timestamps.extend(range(tail_start, duration_ms + 1, probe.step_ms))
        return timestamps

    def _probe_and_gate(
        self, reference: str | Path | MediaReference, run: _RunState
    ) -> tuple[MediaReference, int, ActivityWindow]:
        media = self._resolve(reference, run)
        duration_ms = self._effective_duration(media, run)

        run.enter(PipelineState.PROBING)
        samples: list[ProbeSample] = []
        for timestamp_ms in self.probe_timestamps(duration_ms):
            run.token.raise_if_cancelled(PipelineState.GATING)
            self._collect_probe(media.path, timestamp_ms, samples, run)

        return media, duration_ms, self._gate(samples, duration_ms, run)

    def _resolve(self, reference: str | Path | MediaReference, run: _RunState) -> MediaReference:
        run.enter(PipelineState.RESOLVING)
        if isinstance(reference, MediaReference):
            return reference
        try:
            return self.resolver(reference)
        except OSError as exc:
            raise MediaAccessError(f"cannot access media: {reference} ({exc})") from exc

    def _effective_duration(self, media: MediaReference, run: _RunState) -> int:
        run.raw_duration_ms = max(media.duration_ms, 0)
        if run.raw_duration_ms > 0:
            return run.raw_duration_ms
        fallback = self.settings.probe.fallback_duration_ms
        logger.warning("Duration unknown for %s; assuming %sms", media.path, fallback)
        return fallback

    def _collect_probe(self, path: str, timestamp_ms: int, samples: list[ProbeSample], run: _RunState) -> None:
        probe = self.settings.probe
        clamped_ms = max(0, min(timestamp_ms, self._last_safe_ms(run, timestamp_ms)))
        try:
            data = run.provider.extract_frame(path, clamped_ms, probe.quality, probe.max_width)
        except Exception as exc:
            logger.debug("Probe at %sms raised: %s", clamped_ms, exc)
            data = None

        run.probe_count += 1
        if not data:
            run.probe_failures += 1
            return
        if samples and samples[-1].timestamp_ms >= clamped_ms:
            return
        samples.append(ProbeSample(timestamp_ms=clamped_ms, byte_size=len(data)))

    def _last_safe_ms(self, run: _RunState, timestamp_ms: int) -> int:
        if run.raw_duration_ms <= 0:
            return timestamp_ms
        return run.raw_duration_ms - self.settings.sampler.boundary_guard_ms

    def _gate(self, samples: list[ProbeSample], duration_ms: int, run: _RunState) -> ActivityWindow:
        run.enter(PipelineState.GATING)
        window = detect_from_samples(samples, duration_ms, self.settings.gate)
        log = logger.info if window.confident else logger.warning
        log(
            "Trimmed window: start=%sms end=%sms len=%sms confident=%s reason=%s (probes=%d failed=%d)",
            window.start_ms,
            window.end_ms,
            window.span_ms,
            window.confident,
            window.rationale,
            run.probe_count,
            run.probe_failures,
        )
        return window

    def _job(self, media: MediaReference, duration_ms: int, window: ActivityWindow, run: _RunState) -> SamplerJob:
        sampler = self.settings.sampler
        return SamplerJob(
            path=media.path,
            duration_ms=duration_ms,
            window_start_ms=window.start_ms,
            window_end_ms=window.end_ms,
            max_images=sampler.max_images,
            max_clips=sampler.max_clips,
            settings=sampler,
            provider=run.provider,
            clip_cutter=self.clip_cutter,
        )

    def _dispatch(self, job: SamplerJob) -> SamplerOutput:
        settings = self.settings.offload
        if settings.mode == "process":
            return offload.run_in_worker(
                sample_window,
                job,
                start_method=settings.start_method,
                timeout=settings.timeout_seconds,
                log_level=self.settings.logging.level,
            )
        if settings.mode == "thread":
            return offload.run_in_thread(sample_window, job, timeout=settings.timeout_seconds)
        return offload.run_inline(sample_window, job)

    async def _dispatch_async(self, job: SamplerJob) -> SamplerOutput:
        settings = self.settings.offload
        if settings.mode == "process":
            return await offload.run_in_worker_async(
                sample_window,
                job,
                start_method=settings.start_method,
                timeout=settings.timeout_seconds,
                log_level=self.settings.logging.level,
            )
        if settings.mode == "thread":
            return await offload.run_in_thread_async(sample_window, job)
        return offload.run_inline(sample_window, job)

    def _finish(self, output: SamplerOutput, window: ActivityWindow, duration_ms: int, run: _RunState) -> SamplingResult:
        if output.is_empty:
            raise UnreadableMediaError(
                f"Video processing produced no media (duration={duration_ms}ms, "
                f"probes={run.probe_count}, failed_extractions={output.extraction_failures})."
            )

        run.enter(PipelineState.DONE)
        diagnostics = SamplingDiagnostics(
            strategy=f"motion_gate_{self.settings.offload.mode}",
            duration_ms=duration_ms,
            raw_duration_ms=run.raw_duration_ms,
            elapsed_ms=run.elapsed_ms(),
            window_start_ms=window.start_ms,
            window_end_ms=window.end_ms,
            window_ms=window.span_ms,
            gate_confident=window.confident,
            gate_rationale=window.rationale,
            probe_count=run.probe_count,
            probe_failures=run.probe_failures,
            extraction_failures=output.extraction_failures,
            fallback_tier=output.fallback_tier,
            top_up_count=output.top_up_count,
            offload_mode=self.settings.offload.mode,
            clip_cutter_available=output.clip_cutter_available,
        )
        logger.info(
            "Payload: anchors=%d frames=%d clips=%d (%sms)",
            len(output.anchors),
            len(output.frames),
            len(output.clips),
            diagnostics.elapsed_ms,
        )
        return SamplingResult(
            anchors=output.anchors,
            frames=output.frames,
            clips=output.clips,
            gate=window,
            diagnostics=diagnostics,
        )

    def _fail(self, run: _RunState, exc: SamplingError) -> None:
        logger.debug("Sampling run failed during %s: %s", run.state.value, exc)
        run.state = PipelineState.FAILED


def _release(provider: ThumbnailProvider) -> None:
    close = getattr(provider, "close", None)
    if callable(close):
        close()
