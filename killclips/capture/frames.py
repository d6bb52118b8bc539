from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from killclips.capture.frame_sampler import FrameSampler
from killclips.config import DetectionConfig, RegionOfInterest
from killclips.models import RawSample, RecognizedFrame

logger = logging.getLogger(__name__)


class TextRecognizer(Protocol):
    """Black-box text recognition over a cropped frame region.

    No OCR engine ships with the package. Callers plug one in through
    ``recognize_video``; the CLI consumes recorded recognizer output instead
    (see ``load_recognized_frames``).
    """

    def recognize(self, image: Any) -> list[tuple[str, float]]: ...


def crop_region(frame: Any, region: RegionOfInterest) -> Any:
    """Crop a decoded frame (H x W [x C] array) to a normalized region.

    Coordinates use the image convention: origin top-left, y grows downward.
    The crop is at least one pixel in each dimension.
    """

    frame = np.asarray(frame)
    height, width = frame.shape[:2]
    if height == 0 or width == 0:
        raise ValueError("Cannot crop an empty frame.")

    x0 = min(int(round(region.x * width)), width - 1)
    y0 = min(int(round(region.y * height)), height - 1)
    x1 = min(max(x0 + int(round(region.width * width)), x0 + 1), width)
    y1 = min(max(y0 + int(round(region.height * height)), y0 + 1), height)
    return frame[y0:y1, x0:x1]


def iter_region_frames(
    video_path: str | Path,
    sampler: FrameSampler,
    region: RegionOfInterest,
) -> Iterator[tuple[int, float, Any]]:
    """Decode a video and yield (frame_number, capture_seconds, roi) for sampled frames."""

    source_path = Path(video_path).expanduser().resolve()
    if not source_path.exists():
        raise FileNotFoundError(f"Video file not found: {source_path}")

    import cv2

    capture = cv2.VideoCapture(str(source_path))
    if not capture.isOpened():
        raise RuntimeError(f"Unable to open video for frame sampling: {source_path}")

    native_fps = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
    frame_number = 0

    try:
        while True:
            ok, frame = capture.read()
            if not ok:
                break

            frame_number += 1
            if not sampler.should_sample(frame_number):
                continue

            position_ms = float(capture.get(cv2.CAP_PROP_POS_MSEC) or 0.0)
            if position_ms <= 0.0 and native_fps > 0:
                position_ms = (frame_number - 1) * 1000.0 / native_fps

            yield frame_number, round(position_ms / 1000.0, 3), crop_region(frame, region)
    finally:
        capture.release()


def recognize_video(
    video_path: str | Path,
    recognizer: TextRecognizer,
    config: DetectionConfig,
) -> Iterator[RecognizedFrame]:
    """Run a recognizer over the sampled region of every selected frame.

    This is the in-process entry point for a live ``TextRecognizer``. Its
    output feeds ``CaptureSession.process_frames`` the same way the JSON Lines
    frames from ``load_recognized_frames`` do for ``killclips detect``.
    """

    sampler = FrameSampler.from_config(config)
    for frame_number, capture_seconds, roi in iter_region_frames(video_path, sampler, config.region):
        samples = [
            RawSample(text=text, confidence=float(confidence), capture_seconds=capture_seconds)
            for text, confidence in recognizer.recognize(roi)
        ]
        yield RecognizedFrame(frame_number=frame_number, capture_seconds=capture_seconds, samples=samples)


def load_recognized_frames(path: str | Path) -> list[RecognizedFrame]:
    """Load recorded recognizer output from a JSON Lines file, one frame per line."""

    frames: list[RecognizedFrame] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Line {line_number} is not valid JSON: {exc}") from exc
            if not isinstance(row, dict):
                raise ValueError(f"Line {line_number} must be an object.")
            frames.append(_parse_frame_row(row, line_number))

    logger.debug("Loaded %d recognized frames from %s", len(frames), path)
    return frames


def _parse_frame_row(row: dict[str, Any], line_number: int) -> RecognizedFrame:
    try:
        capture_seconds = float(row["capture_seconds"])
        frame_number = int(row.get("frame", line_number))
        samples = [
            RawSample(
                text=str(sample["text"]),
                confidence=float(sample.get("confidence", 1.0)),
                capture_seconds=capture_seconds,
            )
            for sample in row.get("samples", [])
        ]
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError(f"Line {line_number} is missing or has invalid fields: {exc}") from exc

    if capture_seconds < 0:
        raise ValueError(f"Line {line_number} has a negative capture time.")

    wall_clock = row.get("wall_clock")
    return RecognizedFrame(
        frame_number=frame_number,
        capture_seconds=capture_seconds,
        samples=samples,
        wall_clock=float(wall_clock) if wall_clock is not None else None,
    )
