from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence, TypeVar

from bench_sampler.config import SamplerSettings
from bench_sampler.features.clips import ClipCutter
from bench_sampler.features.thumbnails import ThumbnailProvider
from bench_sampler.models import SampledClip, SampledFrame, SamplerOutput

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIER_WINDOW_QUARTILES = "window_quartiles"
TIER_FULL_VIDEO = "full_video"

SCOUT_MIN_COUNT = 4
SCOUT_MAX_COUNT = 8
SCOUT_WIDTH = 320
SCOUT_QUALITY = 60


@dataclass(slots=True)
class SamplerJob:
    """The single input message of one sampling run."""

    path: str
    duration_ms: int
    window_start_ms: int
    window_end_ms: int
    max_images: int
    max_clips: int
    settings: SamplerSettings
    provider: ThumbnailProvider
    clip_cutter: ClipCutter | None = None


def stratified_pick(items: Sequence[T], k: int) -> list[T]:
    """Evenly spread ``k`` picks over ``items`` at indices ``floor(i * n / k)``."""

    if k <= 0:
        return []
    n = len(items)
    if n <= k:
        return list(items)
    return [items[(i * n) // k] for i in range(k)]


def top_k_indices(values: Sequence[float], k: int, min_spacing: int) -> list[int]:
    """Greedy top-k by magnitude, rejecting picks closer than ``min_spacing``; ascending."""

    if k <= 0:
        return []
    ranked = sorted(range(len(values)), key=lambda idx: values[idx], reverse=True)
    picked: list[int] = []
    for idx in ranked:
        if len(picked) >= k:
            break
        if all(abs(idx - other) >= min_spacing for other in picked):
            picked.append(idx)
    return sorted(picked)


def anchor_timestamps(start_ms: int, end_ms: int, count: int, min_span_ms: int = 0) -> list[int]:
    """Evenly spaced interior points; a span widened to ``min_span_ms`` is still capped at ``end_ms``."""

    span = max(min_span_ms, end_ms - start_ms)
    return [min(end_ms, int(start_ms + (i + 1) * span / (count + 1))) for i in range(max(count, 0))]


def dense_timestamps(start_ms: int, end_ms: int, step_ms: int) -> list[int]:
    return list(range(start_ms, max(start_ms, end_ms) + 1, step_ms))


def sample_window(job: SamplerJob) -> SamplerOutput:
    """Run the budgeted sampler for one trimmed window.

    Produces evenly spread anchors, a stratified pick of a near frame-rate
    dense pass capped at ``max_images``, and optional motion-centred clips.
    Individual extraction failures are skipped. When both anchors and frames
    come back empty the window quartiles and then evenly spaced points across
    the whole video are tried. A non-zero ``min_images`` tops the payload up
    with anchor-fill frames. Extraction calls run one at a time.
    """

    extractor = _Extractor(job)
    settings = job.settings
    output = SamplerOutput()
    start_ms, end_ms = job.window_start_ms, job.window_end_ms

    try:
        anchor_count = min(settings.anchor_count, job.max_images)
        output.anchors = extractor.extract_all(
            anchor_timestamps(start_ms, end_ms, anchor_count, settings.min_window_span_ms),
            quality=settings.anchor_quality,
            max_width=settings.anchor_width,
        )

        wanted = max(0, job.max_images - anchor_count)
        picked = stratified_pick(dense_timestamps(start_ms, end_ms, settings.dense_step_ms), wanted)
        output.frames = extractor.extract_all(picked, quality=settings.dense_quality, max_width=settings.dense_width)
        dense_frames = list(output.frames)

        if not output.anchors and not output.frames and job.max_images > 0:
            _run_fallback_tiers(job, extractor, output)

        if settings.min_images > 0:
            _top_up(job, extractor, output)

        cutter = job.clip_cutter
        output.clip_cutter_available = cutter is not None and cutter.is_available()
        if cutter is not None and output.clip_cutter_available and job.max_clips > 0 and (output.anchors or output.frames):
            output.clips = _cut_motion_clips(job, dense_frames, cutter)
    finally:
        close = getattr(job.provider, "close", None)
        if callable(close):
            close()

    output.extraction_failures = extractor.failures
    logger.info(
        "Sampled window %s-%sms: anchors=%d frames=%d clips=%d failures=%d tier=%s",
        start_ms,
        end_ms,
        len(output.anchors),
        len(output.frames),
        len(output.clips),
        output.extraction_failures,
        output.fallback_tier,
    )
    return output


def scout_frames(
    provider: ThumbnailProvider,
    path: str,
    duration_ms: int,
    desired_count: int,
    window: tuple[int, int] | None = None,
) -> list[SampledFrame]:
    """Small evenly spaced frames for a quick pre-check; never raises."""

    if duration_ms <= 0:
        return []
    count = min(max(desired_count, SCOUT_MIN_COUNT), SCOUT_MAX_COUNT)
    start_ms, end_ms = window if window is not None else (0, duration_ms)
    step = max(1, end_ms - start_ms) // (count + 1)

    frames: list[SampledFrame] = []
    for i in range(count):
        timestamp_ms = start_ms + (i + 1) * step
        try:
            data = provider.extract_frame(path, timestamp_ms, SCOUT_QUALITY, SCOUT_WIDTH)
        except Exception as exc:
            logger.debug("Scout frame at %sms failed: %s", timestamp_ms, exc)
            continue
        if data:
            frames.append(SampledFrame(data=data, timestamp_ms=timestamp_ms))
    return frames


class _Extractor:
    def __init__(self, job: SamplerJob) -> None:
        self.job = job
        self.failures = 0

    def safe_timestamp(self, timestamp_ms: int) -> int:
        ceiling = max(self.job.duration_ms - self.job.settings.boundary_guard_ms, 0)
        return max(0, min(int(timestamp_ms), ceiling))

    def extract(self, timestamp_ms: int, quality: int, max_width: int | None) -> SampledFrame | None:
        timestamp_ms = self.safe_timestamp(timestamp_ms)
        try:
            data = self.job.provider.extract_frame(self.job.path, timestamp_ms, quality, max_width)
        except Exception as exc:
            logger.debug("Extraction at %sms raised: %s", timestamp_ms, exc)
            data = None
        if not data:
            self.failures += 1
            return None
        return SampledFrame(data=data, timestamp_ms=timestamp_ms)

    def extract_all(self, timestamps: Sequence[int], quality: int, max_width: int | None) -> list[SampledFrame]:
        frames: list[SampledFrame] = []
        for timestamp_ms in timestamps:
            frame = self.extract(timestamp_ms, quality, max_width)
            if frame is not None:
                frames.append(frame)
        return frames


def _run_fallback_tiers(job: SamplerJob, extractor: _Extractor, output: SamplerOutput) -> None:
    settings = job.settings
    start_ms, end_ms = job.window_start_ms, job.window_end_ms
    span = max(settings.min_window_span_ms, end_ms - start_ms)

    logger.warning("Primary sampling produced no images; trying window quartiles")
    quartiles = [min(end_ms, start_ms + int(span * fraction)) for fraction in (0.0, 0.25, 0.5, 0.75)] + [end_ms]
    output.frames = extractor.extract_all(
        quartiles[: job.max_images],
        quality=settings.fallback_quality,
        max_width=settings.fallback_width,
    )
    output.fallback_tier = TIER_WINDOW_QUARTILES
    if output.frames:
        return

    logger.warning("Window quartiles failed; trying %d points across the full video", settings.last_resort_count)
    count = min(settings.last_resort_count, job.max_images)
    full_video = [int(job.duration_ms * i / (count + 1)) for i in range(1, count + 1)]
    output.frames = extractor.extract_all(
        full_video,
        quality=settings.last_resort_quality,
        max_width=settings.fallback_width,
    )
    output.fallback_tier = TIER_FULL_VIDEO


def _top_up(job: SamplerJob, extractor: _Extractor, output: SamplerOutput) -> None:
    target = min(job.settings.min_images, job.max_images)
    needed = target - len(output.anchors) - len(output.frames)
    if needed <= 0:
        return

    fill = [job.duration_ms * i // (needed + 1) for i in range(1, needed + 1)]
    added = extractor.extract_all(fill, quality=job.settings.fill_quality, max_width=job.settings.anchor_width)
    output.frames = sorted(output.frames + added, key=lambda frame: frame.timestamp_ms)
    output.top_up_count = len(added)
    logger.info("Added %d anchor-fill frame(s) to reach minimum payload of %d", len(added), target)


def _cut_motion_clips(job: SamplerJob, dense_frames: Sequence[SampledFrame], cutter: ClipCutter) -> list[SampledClip]:
    # Motion peaks come from the byte-size deltas of the dense pass already extracted.
    settings = job.settings
    start_ms, end_ms = job.window_start_ms, job.window_end_ms

    profile_times = [frame.timestamp_ms for frame in dense_frames]
    profile_sizes = [len(frame.data) for frame in dense_frames]
    if len(profile_sizes) < 2:
        return []

    deltas = [abs(profile_sizes[i] - profile_sizes[i - 1]) for i in range(1, len(profile_sizes))]
    peaks = top_k_indices(deltas, k=job.max_clips, min_spacing=settings.clip_min_spacing)

    clips: list[SampledClip] = []
    for idx in peaks:
        mid_ms = profile_times[min(idx + 1, len(profile_times) - 1)]
        clip_start = max(start_ms, mid_ms - settings.clip_half_width_ms)
        clip_end = min(end_ms, mid_ms + settings.clip_half_width_ms)
        try:
            data = cutter.cut_clip(job.path, clip_start, clip_end)
        except Exception as exc:
            logger.debug("Clip cut %s-%sms raised: %s", clip_start, clip_end, exc)
            data = None
        if data:
            clips.append(SampledClip(data=data, start_ms=clip_start, end_ms=clip_end))
    return sorted(clips, key=lambda clip: clip.start_ms)
