from __future__ import annotations

import json
import os
import time
from pathlib import Path

from typer.testing import CliRunner

import bench_sampler.cli as cli
from bench_sampler.config import Settings
from bench_sampler.errors import StorageExhaustedError, UnreadableMediaError
from bench_sampler.models import ActivityWindow, MediaReference, SampledFrame, SamplingDiagnostics, SamplingResult

WINDOW = ActivityWindow(start_ms=3000, end_ms=17000, confident=False, rationale="fallback_no_probe")


def _result() -> SamplingResult:
    return SamplingResult(
        anchors=[SampledFrame(data=b"a", timestamp_ms=5000)],
        frames=[SampledFrame(data=b"b", timestamp_ms=6000)],
        clips=[],
        gate=WINDOW,
        diagnostics=SamplingDiagnostics(
            strategy="motion_gate_inline",
            duration_ms=20000,
            raw_duration_ms=20000,
            elapsed_ms=5,
            window_start_ms=3000,
            window_end_ms=17000,
            window_ms=14000,
            gate_confident=False,
            gate_rationale="fallback_no_probe",
        ),
    )


class _FakePipeline:
    def __init__(self, settings: Settings, error: Exception | None = None) -> None:
        self.settings = settings
        self.error = error

    def sample(self, video: str) -> SamplingResult:
        if self.error is not None:
            raise self.error
        return _result()

    def detect_window(self, video: str) -> tuple[MediaReference, ActivityWindow]:
        if self.error is not None:
            raise self.error
        return MediaReference(path="/cache/localized/vid_1.mp4", duration_ms=20000), WINDOW


def _patch(monkeypatch, error: Exception | None = None) -> list[Settings]:
    built: list[Settings] = []

    def _build(settings: Settings) -> _FakePipeline:
        built.append(settings)
        return _FakePipeline(settings, error)

    monkeypatch.setattr(cli, "_bootstrap", lambda *args, **kwargs: Settings())
    monkeypatch.setattr(cli, "_build_pipeline", _build)
    return built


def test_sample_command_prints_summary_and_writes_payload(tmp_path: Path, monkeypatch) -> None:
    _patch(monkeypatch)
    output_path = tmp_path / "out" / "payload.json"

    result = CliRunner().invoke(cli.app, ["sample", "lift.mp4", "--output", str(output_path)])

    assert result.exit_code == 0
    assert "[1/2] Sample video..." in result.output
    assert "[2/2] Write payload done" in result.output
    assert '"status": "ok"' in result.output
    payload = json.loads(output_path.read_text(encoding="utf-8"))
    assert payload["frame_timestamps_ms"] == [5000, 6000]
    assert payload["request_hints"]["gate_rationale"] == "fallback_no_probe"


def test_sample_command_applies_option_overrides(monkeypatch) -> None:
    built = _patch(monkeypatch)

    result = CliRunner().invoke(
        cli.app,
        ["sample", "lift.mp4", "--offload", "thread", "--max-images", "20", "--max-clips", "0", "--min-images", "10"],
    )

    assert result.exit_code == 0
    settings = built[0]
    assert settings.offload.mode == "thread"
    assert (settings.sampler.max_images, settings.sampler.max_clips, settings.sampler.min_images) == (20, 0, 10)
    assert settings.sampler.anchor_count == 5


def test_sample_command_rejects_unknown_offload_mode(monkeypatch) -> None:
    _patch(monkeypatch)

    result = CliRunner().invoke(cli.app, ["sample", "lift.mp4", "--offload", "gpu"])

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert "Traceback" not in result.output


def test_sample_command_prints_clean_error_without_traceback(monkeypatch) -> None:
    _patch(monkeypatch, UnreadableMediaError("Video processing produced no media (duration=20000ms)."))

    result = CliRunner().invoke(cli.app, ["sample", "lift.mp4"])

    assert result.exit_code == 1
    assert "[1/1] Sample video failed" in result.output
    assert "Error: Video processing produced no media" in result.output
    assert "Traceback" not in result.output


def test_storage_exhaustion_exits_with_dedicated_code(monkeypatch) -> None:
    _patch(monkeypatch, StorageExhaustedError("Not enough free storage in /cache/localized"))

    result = CliRunner().invoke(cli.app, ["sample", "lift.mp4"])

    assert result.exit_code == cli.STORAGE_EXIT_CODE
    assert "Please free up space" in result.output


def test_gate_command_prints_window(monkeypatch) -> None:
    _patch(monkeypatch)

    result = CliRunner().invoke(cli.app, ["gate", "lift.mp4"])

    assert result.exit_code == 0
    assert '"rationale": "fallback_no_probe"' in result.output
    assert '"span_ms": 14000' in result.output


def test_cache_purge_and_config_show_use_config_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    cache_dir = tmp_path / "cache"
    stale = cache_dir / "localized" / "vid_1.mp4"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"x")
    old = time.time() - 48 * 3600
    os.utime(stale, (old, old))
    config_path = tmp_path / "config.yaml"
    config_path.write_text(f"storage:\n  cache_dir: {cache_dir}\n", encoding="utf-8")

    purge = CliRunner().invoke(cli.app, ["cache", "purge", "--config", str(config_path)])
    show = CliRunner().invoke(cli.app, ["config", "show", "--config", str(config_path)])

    assert purge.exit_code == 0
    assert not stale.exists()
    assert "vid_1.mp4" in purge.output
    assert show.exit_code == 0
    assert str(cache_dir) in show.output
