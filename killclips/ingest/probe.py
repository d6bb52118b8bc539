from __future__ import annotations

import json
import math
import subprocess
from pathlib import Path
from typing import Any

from killclips.errors import DurationUnavailableError, MissingSourceError

_SHARED_LIBRARY_MARKERS = ("error while loading shared libraries", "cannot open shared object file")


def probe_duration(video_path: str | Path) -> float:
    """Return the total duration of a session video in seconds via ffprobe."""

    source_path = Path(video_path).expanduser()
    if not source_path.is_file():
        raise MissingSourceError(f"Session video not found: {source_path}")

    payload = _run_ffprobe(source_path)
    duration = _extract_duration(payload)
    if duration is None:
        raise DurationUnavailableError(f"ffprobe reported no duration for {source_path}")
    return duration


def _run_ffprobe(video_path: Path) -> dict[str, Any]:
    command = [
        "ffprobe",
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
        str(video_path),
    ]

    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise DurationUnavailableError(
            "ffprobe executable was not found. Install FFmpeg so ffprobe is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        if any(marker in stderr for marker in _SHARED_LIBRARY_MARKERS):
            raise DurationUnavailableError(
                "ffprobe is installed but failed to start because required shared libraries are missing. "
                f"ffprobe stderr: {stderr}"
            ) from exc
        details = f" ffprobe stderr: {stderr}" if stderr else ""
        raise DurationUnavailableError(
            f"ffprobe failed while probing media file: {video_path}.{details}"
        ) from exc

    try:
        return json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise DurationUnavailableError("ffprobe returned invalid JSON output.") from exc


def _extract_duration(payload: dict[str, Any]) -> float | None:
    format_duration = _to_float(payload.get("format", {}).get("duration"))
    if format_duration is not None:
        return format_duration

    stream_durations = [
        duration
        for duration in (_to_float(stream.get("duration")) for stream in payload.get("streams", []))
        if duration is not None
    ]
    return max(stream_durations, default=None)


def _to_float(raw_value: Any) -> float | None:
    if raw_value in (None, "N/A", ""):
        return None
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value
