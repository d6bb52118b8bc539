"""File-backed handoff channel between the capture and clip-processing sides.

The pending record and the consumer watermark are whole-file JSON blobs
replaced atomically; there are no partial updates. The watermark comparison is
advisory and is the only guard against processing one publication twice.
"""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from killclips.errors import HandoffCorruptionError
from killclips.models import KillEvent, PendingSessionHandoff

logger = logging.getLogger(__name__)

RECORD_FILENAME = "pending_session.json"
PUBLISHER_STATE_FILENAME = "last_published_at.json"
WATERMARK_FILENAME = "last_processed_session_at.json"

KEY_SESSION_URL = "pending_session_url"
KEY_WALLCLOCK = "pending_kill_wallclock_timestamps"
KEY_CAPTURE_CLOCK = "pending_kill_capture_clock_seconds"
KEY_EVENT_TYPES = "pending_kill_event_types"
KEY_UPDATED_AT = "session_updated_at"
KEY_STARTED_AT = "session_started_at"

_MIN_PUBLISH_STEP = 1e-6


def is_new_publication(published_at: float, watermark: float | None) -> bool:
    """True when a publication has not been processed yet."""

    if watermark is None:
        return True
    return published_at > watermark


def build_record(handoff: PendingSessionHandoff) -> dict[str, Any]:
    record: dict[str, Any] = {
        KEY_SESSION_URL: handoff.session_video,
        KEY_WALLCLOCK: [event.wall_clock for event in handoff.events],
        KEY_CAPTURE_CLOCK: [
            event.capture_seconds if math.isfinite(event.capture_seconds) else None for event in handoff.events
        ],
        KEY_EVENT_TYPES: [event.event_type for event in handoff.events],
        KEY_UPDATED_AT: handoff.published_at,
    }
    if handoff.session_started_at is not None:
        record[KEY_STARTED_AT] = handoff.session_started_at
    return record


def parse_record(payload: Any) -> PendingSessionHandoff:
    """Validate a raw handoff record; raises HandoffCorruptionError when malformed."""

    if not isinstance(payload, dict):
        raise HandoffCorruptionError("Handoff record must be an object.")

    session_video = payload.get(KEY_SESSION_URL)
    if not isinstance(session_video, str) or not session_video.strip():
        raise HandoffCorruptionError(f"'{KEY_SESSION_URL}' must be a non-empty string.")

    wall_clocks = _number_list(payload, KEY_WALLCLOCK)
    capture_clocks = _number_list(payload, KEY_CAPTURE_CLOCK, allow_missing=True)
    event_types = payload.get(KEY_EVENT_TYPES)
    if not isinstance(event_types, list) or not all(isinstance(item, str) for item in event_types):
        raise HandoffCorruptionError(f"'{KEY_EVENT_TYPES}' must be a list of strings.")

    if not len(wall_clocks) == len(capture_clocks) == len(event_types):
        raise HandoffCorruptionError(
            "Handoff event lists are misaligned: "
            f"{len(wall_clocks)} wall-clock, {len(capture_clocks)} capture-clock, {len(event_types)} types."
        )

    published_at = _number(payload.get(KEY_UPDATED_AT), KEY_UPDATED_AT)
    started_at = payload.get(KEY_STARTED_AT)
    session_started_at = _number(started_at, KEY_STARTED_AT) if started_at is not None else None

    events = tuple(
        KillEvent(wall_clock=wall_clock, capture_seconds=capture_seconds, event_type=event_type)
        for wall_clock, capture_seconds, event_type in zip(wall_clocks, capture_clocks, event_types)
    )
    return PendingSessionHandoff(
        session_video=session_video,
        events=events,
        published_at=published_at,
        session_started_at=session_started_at,
    )


class HandoffStore:
    """Durable single-writer/single-reader pending-session channel."""

    def __init__(self, store_dir: str | Path, state_dir: str | Path | None = None) -> None:
        self.store_dir = Path(store_dir)
        self.state_dir = Path(state_dir) if state_dir is not None else self.store_dir

    @property
    def record_path(self) -> Path:
        return self.store_dir / RECORD_FILENAME

    @property
    def watermark_path(self) -> Path:
        return self.state_dir / WATERMARK_FILENAME

    def publish(
        self,
        session_video: str | Path,
        events: Sequence[KillEvent],
        published_at: float | None = None,
        session_started_at: float | None = None,
    ) -> PendingSessionHandoff:
        """Replace the pending record with a finished session."""

        previous = self._read_scalar(self.store_dir / PUBLISHER_STATE_FILENAME)
        stamp = time.time() if published_at is None else published_at
        if previous is not None and stamp <= previous:
            stamp = previous + _MIN_PUBLISH_STEP

        handoff = PendingSessionHandoff(
            session_video=str(session_video),
            events=tuple(events),
            published_at=stamp,
            session_started_at=session_started_at,
        )
        _atomic_write_json(self.record_path, build_record(handoff))
        _atomic_write_json(self.store_dir / PUBLISHER_STATE_FILENAME, stamp)
        logger.info("Published session %s with %d kills at %.6f", session_video, len(handoff.events), stamp)
        return handoff

    def read_pending(self) -> PendingSessionHandoff | None:
        """Return the pending record, discarding it when it is malformed."""

        if not self.record_path.exists():
            return None

        try:
            payload = json.loads(self.record_path.read_text(encoding="utf-8"))
            return parse_record(payload)
        except (json.JSONDecodeError, UnicodeDecodeError, HandoffCorruptionError) as exc:
            logger.warning("Discarding corrupt handoff record %s: %s", self.record_path, exc)
            self.clear()
            return None

    def watermark(self) -> float | None:
        return self._read_scalar(self.watermark_path)

    def set_watermark(self, value: float) -> None:
        _atomic_write_json(self.watermark_path, value)

    def try_consume(self) -> PendingSessionHandoff | None:
        """Claim the pending record if it is newer than the watermark."""

        record = self.read_pending()
        if record is None or not is_new_publication(record.published_at, self.watermark()):
            return None
        self.set_watermark(record.published_at)
        logger.info("Claimed session %s published at %.6f", record.session_video, record.published_at)
        return record

    def clear(self) -> None:
        self.record_path.unlink(missing_ok=True)

    def _read_scalar(self, path: Path) -> float | None:
        if not path.exists():
            return None
        try:
            value = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable state file %s: %s", path, exc)
            return None
        if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
            logger.warning("Ignoring invalid state value in %s: %r", path, value)
            return None
        return float(value)


def _number(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or not math.isfinite(value):
        raise HandoffCorruptionError(f"'{key}' must be a finite number, got {value!r}.")
    return float(value)


def _number_list(payload: dict[str, Any], key: str, allow_missing: bool = False) -> list[float]:
    values = payload.get(key)
    if not isinstance(values, list):
        raise HandoffCorruptionError(f"'{key}' must be a list.")
    # null marks an offset the capture side could not measure.
    return [math.nan if allow_missing and value is None else _number(value, key) for value in values]


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
