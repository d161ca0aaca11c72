from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from time import perf_counter
from typing import Callable, TypeVar

import typer

from bench_sampler.config import Settings, load_settings
from bench_sampler.errors import SamplingError, StorageExhaustedError
from bench_sampler.ingest.cache import purge_stale_files
from bench_sampler.logging_config import configure_logging
from bench_sampler.payload import encode_payload, summarize
from bench_sampler.pipeline import SamplingPipeline

app = typer.Typer(help="Bench-press video sampling: motion gate, budgeted sampler and payload export.")
config_app = typer.Typer(help="Configuration commands.")
cache_app = typer.Typer(help="Cache maintenance commands.")

app.add_typer(config_app, name="config")
app.add_typer(cache_app, name="cache")

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORAGE_EXIT_CODE = 3

CONFIG_OPTION = typer.Option(
    Path("configs/default.yaml"),
    "--config",
    "-c",
    envvar="BENCH_SAMPLER_CONFIG",
    help="Path to YAML configuration file.",
)


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path, verbose: bool = False) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging, verbose=verbose)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _build_pipeline(settings: Settings) -> SamplingPipeline:
    return SamplingPipeline(settings)


def _fail(exc: Exception) -> typer.Exit:
    if isinstance(exc, StorageExhaustedError):
        logger.error("Storage exhausted: %s", exc)
        typer.echo(f"Error: {exc}\n{exc.hint}", err=True)
        return typer.Exit(code=STORAGE_EXIT_CODE)
    logger.error("Sampling failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command()
def gate(
    video: str,
    config_path: Path = CONFIG_OPTION,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Probe the head and tail of a video and print the trimmed activity window."""

    settings = _bootstrap(config_path, verbose)
    pipeline = _build_pipeline(settings)
    try:
        media, window = _run_with_progress(1, 1, "Probe and gate", lambda: pipeline.detect_window(video))
    except (SamplingError, ValueError) as exc:
        raise _fail(exc) from exc

    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "media_path": media.path,
                "duration_ms": media.duration_ms,
                "window": {**asdict(window), "span_ms": window.span_ms},
            },
            indent=2,
        )
    )


@app.command()
def sample(
    video: str,
    config_path: Path = CONFIG_OPTION,
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the encoded request payload JSON here."),
    offload: str | None = typer.Option(None, help="Offload mode override: process, thread or inline."),
    max_images: int | None = typer.Option(None, help="Override sampler.max_images."),
    max_clips: int | None = typer.Option(None, help="Override sampler.max_clips."),
    min_images: int | None = typer.Option(None, help="Override sampler.min_images (0 disables top-up)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run the full sampling pipeline and print a byte-free summary."""

    settings = _bootstrap(config_path, verbose)
    total_steps = 2 if output else 1
    try:
        settings = _apply_overrides(settings, offload, max_images, max_clips, min_images)
        pipeline = _build_pipeline(settings)
        result = _run_with_progress(1, total_steps, "Sample video", lambda: pipeline.sample(video))
        if output:
            _run_with_progress(2, total_steps, "Write payload", lambda: _write_payload(output, encode_payload(result)))
    except (SamplingError, ValueError) as exc:
        raise _fail(exc) from exc

    summary = summarize(result)
    if output:
        summary["payload_path"] = str(output)
    typer.echo(json.dumps(summary, indent=2))


@cache_app.command("purge")
def purge_cache(
    config_path: Path = CONFIG_OPTION,
    older_than_hours: float | None = typer.Option(None, help="Age cutoff; defaults to storage.stale_after_hours."),
) -> None:
    """Delete stale files from the cache directory."""

    settings = _bootstrap(config_path)
    hours = settings.storage.stale_after_hours if older_than_hours is None else older_than_hours
    removed = purge_stale_files(settings.storage.cache_dir, older_than_hours=hours)
    typer.echo(json.dumps({"status": "ok", "removed": [str(path) for path in removed]}, indent=2))


def _apply_overrides(
    settings: Settings,
    offload: str | None,
    max_images: int | None,
    max_clips: int | None,
    min_images: int | None,
) -> Settings:
    sampler_updates = {
        key: value
        for key, value in (("max_images", max_images), ("max_clips", max_clips), ("min_images", min_images))
        if value is not None
    }
    data = settings.model_dump(mode="python")
    data["sampler"].update(sampler_updates)
    if offload is not None:
        data["offload"]["mode"] = offload
    return Settings.model_validate(data)


def _write_payload(path: Path, payload: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")
    logger.info("Wrote request payload to %s (%d bytes base64)", path, payload["approx_total_base64_bytes"])
    return path


if __name__ == "__main__":
    app()
