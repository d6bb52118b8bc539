from __future__ import annotations

import csv
import json
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Any, Protocol

from killclips.errors import ExportError, MissingSourceError
from killclips.models import ClipPlan, ProcessingReport

logger = logging.getLogger(__name__)


class ClipExporter(Protocol):
    """Cuts one planned range out of a session video into a clip file."""

    def export(self, session_video: str | Path, plan: ClipPlan, output_dir: str | Path) -> Path: ...


class FfmpegClipExporter:
    """Clip exporter backed by the ffmpeg command-line tool."""

    def __init__(self, preset: str = "veryfast", crf: int = 18) -> None:
        self.preset = preset
        self.crf = crf

    def export(self, session_video: str | Path, plan: ClipPlan, output_dir: str | Path) -> Path:
        source_path = Path(session_video).expanduser()
        if not source_path.is_file():
            raise MissingSourceError(f"Session video not found: {source_path}")

        output_path = Path(output_dir) / plan.output_name
        output_path.parent.mkdir(parents=True, exist_ok=True)

        command = build_ffmpeg_args(
            vod_path=str(source_path),
            plan=plan,
            output_path=str(output_path),
            preset=self.preset,
            crf=self.crf,
        )
        logger.debug("Running %s", shlex.join(command))

        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise ExportError(
                "ffmpeg executable was not found. Install FFmpeg so ffmpeg is available on PATH."
            ) from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            details = f" ffmpeg stderr: {stderr[-500:]}" if stderr else ""
            raise ExportError(f"ffmpeg failed to export {plan.output_name}.{details}") from exc

        return output_path


def build_ffmpeg_args(
    *,
    vod_path: str,
    plan: ClipPlan,
    output_path: str,
    preset: str = "veryfast",
    crf: int = 18,
) -> list[str]:
    return [
        "ffmpeg",
        "-y",
        "-ss",
        f"{max(0.0, plan.start_seconds):.3f}",
        "-i",
        vod_path,
        "-t",
        f"{plan.duration_seconds:.3f}",
        "-c:v",
        "libx264",
        "-preset",
        preset,
        "-crf",
        str(crf),
        "-c:a",
        "aac",
        "-b:a",
        "160k",
        "-movflags",
        "+faststart",
        output_path,
    ]


def build_ffmpeg_clip_command(
    *,
    vod_path: str,
    plan: ClipPlan,
    output_dir: str = "clips",
) -> str:
    """Generate a copy-paste ffmpeg command for a planned clip."""

    output_path = f"{output_dir.rstrip('/')}/{plan.output_name}"
    return shlex.join(build_ffmpeg_args(vod_path=vod_path, plan=plan, output_path=output_path))


def export_clip_manifest(report: ProcessingReport, output_path: str | Path) -> Path:
    """Write a session's per-group outcomes to JSON (default) or CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    rows = generate_clip_manifest(report)
    if path.suffix.lower() == ".csv":
        fields = ["group_index", "label", "kills", "status", "start_seconds", "end_seconds", "duration_seconds", "output_path", "error"]
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=fields)
            writer.writeheader()
            for row in rows:
                writer.writerow({key: "" if row[key] is None else row[key] for key in fields})
    else:
        payload = {
            "session_video": report.session_video,
            "published_at": report.published_at,
            "summary": report.summary,
            "clips": rows,
        }
        path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    return path


def generate_clip_manifest(report: ProcessingReport) -> list[dict[str, Any]]:
    manifest: list[dict[str, Any]] = []
    for result in report.results:
        duration = None
        if result.start_seconds is not None and result.end_seconds is not None:
            duration = round(result.end_seconds - result.start_seconds, 3)
        manifest.append(
            {
                "group_index": result.group_index,
                "label": result.label,
                "kills": result.size,
                "status": result.status,
                "start_seconds": result.start_seconds,
                "end_seconds": result.end_seconds,
                "duration_seconds": duration,
                "output_path": result.output_path,
                "error": result.error,
            }
        )
    return manifest
