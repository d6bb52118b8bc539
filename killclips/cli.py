from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import typer

from killclips.capture.frame_sampler import FrameSampler
from killclips.capture.frames import iter_region_frames, load_recognized_frames
from killclips.config import (
    PRESETS,
    DetectionConfig,
    Settings,
    get_preset,
    load_settings,
    resolve_detection_config,
)
from killclips.errors import ConfigurationError, KillClipsError
from killclips.handoff.consumer import HandoffPoller, SessionProcessor
from killclips.handoff.store import HandoffStore
from killclips.ingest.probe import probe_duration
from killclips.logging_config import configure_logging
from killclips.models import ClipPlan, ProcessingReport
from killclips.propose.clip_planner import plan_session
from killclips.propose.exporter import FfmpegClipExporter, build_ffmpeg_clip_command
from killclips.propose.kill_grouper import group_kills
from killclips.session.event_log import export_events
from killclips.session.recorder import CaptureSession

app = typer.Typer(help="Kill detection and multi-kill highlight clipping.")
config_app = typer.Typer(help="Configuration commands.")

app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION_HELP = "Path to YAML configuration file."


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


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _fail(exc: Exception) -> typer.Exit:
    logger.error("Command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


def _store(settings: Settings) -> HandoffStore:
    return HandoffStore(settings.handoff.store_dir, settings.handoff.state_dir)


def _build_processor(settings: Settings, detection: DetectionConfig) -> SessionProcessor:
    return SessionProcessor(
        store=_store(settings),
        config=detection,
        exporter=FfmpegClipExporter(preset=settings.clips.ffmpeg_preset, crf=settings.clips.crf),
        output_dir=settings.clips.output_dir,
        grouping_gap_seconds=settings.clips.grouping_gap_seconds,
        duration_probe=probe_duration,
    )


def _report_payload(report: ProcessingReport) -> dict[str, Any]:
    return {
        "status": "processed",
        "session_video": report.session_video,
        "published_at": report.published_at,
        "summary": report.summary,
        "created": report.created,
        "total": report.total,
        "session_video_deleted": report.session_video_deleted,
        "clips": [asdict(result) for result in report.results],
    }


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="KILLCLIPS_CONFIG",
        help=CONFIG_OPTION_HELP,
    )
) -> None:
    """Print resolved runtime configuration."""

    try:
        settings = _bootstrap(config_path)
    except ConfigurationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@config_app.command("presets")
def show_presets() -> None:
    """List the named detection presets."""

    typer.echo(json.dumps({name: preset.model_dump(mode="json") for name, preset in PRESETS.items()}, indent=2))


@config_app.command("detection")
def show_detection(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="KILLCLIPS_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    preset: str | None = typer.Option(None, help="Preset name overriding the configured detection source."),
) -> None:
    """Print the active detection config."""

    try:
        settings = _bootstrap(config_path)
        detection = get_preset(preset) if preset else resolve_detection_config(settings)
    except ConfigurationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(detection.model_dump(mode="json"), indent=2))


@app.command("detect")
def detect(
    samples_path: Path = typer.Argument(..., help="JSON Lines file of recognized text, one captured frame per line."),
    video: Path = typer.Option(..., "--video", help="Session video; relative paths resolve against capture.sessions_dir."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="KILLCLIPS_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    started_at: float | None = typer.Option(None, help="Wall-clock epoch seconds of capture time zero. Defaults to now."),
    events_out: Path | None = typer.Option(None, help="Optional JSON/CSV export of the session event log."),
    publish: bool = typer.Option(True, help="Publish the finished session to the handoff store."),
) -> None:
    """Run kill detection over recorded recognizer output and hand the session off."""

    total_steps = 3
    try:
        settings = _bootstrap(config_path)
        detection = resolve_detection_config(settings)
        frames = _run_with_progress(1, total_steps, "Load recognized frames", lambda: load_recognized_frames(samples_path))

        session_video = video.expanduser()
        if not session_video.is_absolute():
            session_video = settings.capture.sessions_dir / session_video
        session = CaptureSession(
            detection,
            session_video=session_video.resolve(),
            started_at=started_at,
            detected_text_interval=settings.logging.detected_text_interval,
        )
        events = _run_with_progress(2, total_steps, "Detect kills", lambda: session.process_frames(frames))

        if events_out is not None:
            export_events(session.event_log.snapshot(), events_out)

        handoff = _run_with_progress(
            3,
            total_steps,
            "Publish session",
            lambda: session.end(_store(settings) if publish else None),
        )
    except (ConfigurationError, ValueError, OSError) as exc:
        raise _fail(exc) from exc

    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "session_video": str(session.session_video),
                "frames": session.frames_seen,
                "kill_count": len(events),
                "published_at": handoff.published_at if handoff is not None else None,
                "events": [asdict(event) for event in events],
                "events_out": str(events_out) if events_out is not None else None,
            },
            indent=2,
        )
    )


@app.command("scan")
def scan(
    video: Path = typer.Argument(..., help="Video file to sample."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="KILLCLIPS_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    limit: int = typer.Option(20, help="Maximum number of sampled frames to list (<=0 lists all)."),
) -> None:
    """List the frames the sampler hands to the recognizer, with region crop sizes."""

    try:
        settings = _bootstrap(config_path)
        detection = resolve_detection_config(settings)
        rows: list[dict[str, Any]] = []
        for frame_number, capture_seconds, roi in iter_region_frames(video, FrameSampler.from_config(detection), detection.region):
            rows.append(
                {
                    "frame": frame_number,
                    "capture_seconds": capture_seconds,
                    "roi_width": int(roi.shape[1]),
                    "roi_height": int(roi.shape[0]),
                }
            )
            if 0 < limit <= len(rows):
                break
    except (ConfigurationError, FileNotFoundError, RuntimeError) as exc:
        raise _fail(exc) from exc

    typer.echo(json.dumps({"video": str(video), "frame_skip_interval": detection.frame_skip_interval, "frames": rows}, indent=2))


@app.command("plan")
def plan(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="KILLCLIPS_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    duration: float | None = typer.Option(None, help="Session duration in seconds; probed with ffprobe when omitted."),
) -> None:
    """Print clip plans for the pending session without consuming it."""

    try:
        settings = _bootstrap(config_path)
        detection = resolve_detection_config(settings)
        record = _store(settings).read_pending()
        if record is None:
            typer.echo(json.dumps({"status": "idle"}, indent=2))
            return
        session_duration = duration if duration is not None else probe_duration(record.session_video)
    except (ConfigurationError, KillClipsError) as exc:
        raise _fail(exc) from exc

    groups = group_kills(record.events, settings.clips.grouping_gap_seconds)
    plans = plan_session(
        groups,
        session_duration,
        detection.pre_roll_seconds,
        detection.post_roll_seconds,
        session_started_at=record.session_started_at,
    )

    rows: list[dict[str, Any]] = []
    for item in plans:
        row: dict[str, Any] = {
            "group_index": item.group_index,
            "label": item.group.label,
            "kills": item.group.size,
        }
        if isinstance(item, ClipPlan):
            row.update(
                {
                    "start_seconds": item.start_seconds,
                    "end_seconds": item.end_seconds,
                    "output_name": item.output_name,
                    "ffmpeg_command": build_ffmpeg_clip_command(
                        vod_path=record.session_video,
                        plan=item,
                        output_dir=str(settings.clips.output_dir),
                    ),
                }
            )
        else:
            row["error"] = item.error
        rows.append(row)

    typer.echo(
        json.dumps(
            {
                "status": "pending",
                "session_video": record.session_video,
                "session_duration": session_duration,
                "plans": rows,
            },
            indent=2,
        )
    )


@app.command("process")
def process(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="KILLCLIPS_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Consume the pending session once and export its highlight clips."""

    try:
        settings = _bootstrap(config_path)
        processor = _build_processor(settings, resolve_detection_config(settings))
        report = asyncio.run(processor.poll_once())
    except ConfigurationError as exc:
        raise _fail(exc) from exc

    if report is None:
        typer.echo(json.dumps({"status": "idle"}, indent=2))
        return

    typer.echo(report.summary, err=True)
    typer.echo(json.dumps(_report_payload(report), indent=2))


@app.command("watch")
def watch(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="KILLCLIPS_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Poll the handoff store and process each new session until interrupted."""

    try:
        settings = _bootstrap(config_path)
        processor = _build_processor(settings, resolve_detection_config(settings))
    except ConfigurationError as exc:
        raise _fail(exc) from exc

    poller = HandoffPoller(
        processor,
        interval_seconds=settings.handoff.poll_interval_seconds,
        on_report=lambda report: typer.echo(f"{Path(report.session_video).name}: {report.summary}", err=True),
    )
    try:
        asyncio.run(poller.run())
    except KeyboardInterrupt:
        typer.echo("Stopped.", err=True)


if __name__ == "__main__":
    app()
