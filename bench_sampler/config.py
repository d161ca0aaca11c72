from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "BENCH_SAMPLER_"


class StorageSettings(BaseModel):
    cache_dir: Path = Path("data/cache")
    copy_to_cache: bool = True
    headroom_bytes: int = 3 * 1024 * 1024
    probe_write_bytes: int = 256 * 1024
    stale_after_hours: float = 8.0


class ProbeSettings(BaseModel):
    head_budget_ms: int = 30000
    tail_budget_ms: int = 20000
    step_ms: int = Field(default=400, gt=0)
    quality: int = Field(default=20, ge=1, le=100)
    max_width: int = 160
    yield_every: int = Field(default=5, gt=0)
    fallback_duration_ms: int = Field(default=30000, gt=0)


class GateSettings(BaseModel):
    """Motion gate heuristics; the defaults are empirically tuned."""

    min_threshold: float = 80.0
    median_multiplier: float = 1.2
    min_streak: int = Field(default=3, gt=0)
    start_backoff_ms: int = 1000
    end_cooldown_ms: int = 2500
    min_window_ms: int = 10000
    target_window_ms: int = 12000
    fallback_start_fraction: float = 0.15
    fallback_end_fraction: float = 0.85
    missing_end_fraction: float = 0.9


class SamplerSettings(BaseModel):
    max_images: int = Field(default=60, ge=0)
    max_clips: int = Field(default=2, ge=0)
    anchor_count: int = Field(default=5, ge=0)
    min_images: int = Field(default=0, ge=0)
    min_window_span_ms: int = 2000
    dense_step_ms: int = Field(default=35, gt=0)
    anchor_quality: int = 42
    dense_quality: int = 38
    fallback_quality: int = 45
    last_resort_quality: int = 42
    fill_quality: int = 42
    anchor_width: int = 480
    dense_width: int = 360
    fallback_width: int = 480
    clip_min_spacing: int = 14
    clip_half_width_ms: int = 450
    last_resort_count: int = 5
    boundary_guard_ms: int = 50


class ClipSettings(BaseModel):
    enabled: bool = True
    ffmpeg_binary: str = "ffmpeg"
    crf: int = 28
    preset: str = "ultrafast"
    timeout_seconds: int = 20


class OffloadSettings(BaseModel):
    mode: Literal["process", "thread", "inline"] = "process"
    start_method: Literal["spawn", "fork", "forkserver"] = "spawn"
    timeout_seconds: int = 600


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    storage: StorageSettings = Field(default_factory=StorageSettings)
    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    sampler: SamplerSettings = Field(default_factory=SamplerSettings)
    clips: ClipSettings = Field(default_factory=ClipSettings)
    offload: OffloadSettings = Field(default_factory=OffloadSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
