from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

RATIONALE_FALLBACK_NO_PROBE = "fallback_no_probe"
RATIONALE_NO_SUSTAINED_MOTION = "no_sustained_motion"
RATIONALE_EXPANDED = "expanded_for_bench_press_analysis"
RATIONALE_SUSTAINED_MOTION = "sustained_motion_detected"


class PipelineState(str, Enum):
    RESOLVING = "resolving"
    PROBING = "probing"
    GATING = "gating"
    SAMPLING = "sampling"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class MediaReference:
    """Local readable media path plus a best-effort duration (0 means unknown)."""

    path: str
    duration_ms: int = 0
    source: str | None = None


@dataclass(frozen=True, slots=True)
class ProbeSample:
    timestamp_ms: int
    byte_size: int


@dataclass(frozen=True, slots=True)
class ActivityWindow:
    """Trimmed working-set window; ``confident=False`` marks a heuristic fallback."""

    start_ms: int
    end_ms: int
    confident: bool
    rationale: str

    @property
    def span_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass(frozen=True, slots=True)
class SampledFrame:
    data: bytes
    timestamp_ms: int


@dataclass(frozen=True, slots=True)
class SampledClip:
    data: bytes
    start_ms: int
    end_ms: int


@dataclass(slots=True)
class SamplerOutput:
    """What one sampler run hands back across the offload boundary."""

    anchors: list[SampledFrame] = field(default_factory=list)
    frames: list[SampledFrame] = field(default_factory=list)
    clips: list[SampledClip] = field(default_factory=list)
    extraction_failures: int = 0
    fallback_tier: str | None = None
    top_up_count: int = 0
    clip_cutter_available: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.anchors or self.frames or self.clips)


@dataclass(slots=True)
class SamplingDiagnostics:
    strategy: str
    duration_ms: int
    raw_duration_ms: int
    elapsed_ms: int
    window_start_ms: int
    window_end_ms: int
    window_ms: int
    gate_confident: bool
    gate_rationale: str
    probe_count: int = 0
    probe_failures: int = 0
    extraction_failures: int = 0
    fallback_tier: str | None = None
    top_up_count: int = 0
    offload_mode: str = "process"
    clip_cutter_available: bool = False


@dataclass(slots=True)
class SamplingResult:
    anchors: list[SampledFrame]
    frames: list[SampledFrame]
    clips: list[SampledClip]
    gate: ActivityWindow
    diagnostics: SamplingDiagnostics

    @property
    def image_count(self) -> int:
        return len(self.anchors) + len(self.frames)

    @property
    def is_empty(self) -> bool:
        return self.image_count + len(self.clips) == 0
