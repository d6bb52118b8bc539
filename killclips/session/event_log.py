from __future__ import annotations

import csv
import json
from collections.abc import Iterator
from dataclasses import asdict
from pathlib import Path

from killclips.errors import EventOrderError
from killclips.models import KillEvent


class SessionEventLog:
    """Append-only, capture-clock-ordered kill events for one recording session."""

    def __init__(self) -> None:
        self._events: list[KillEvent] = []

    def append(self, event: KillEvent) -> None:
        if self._events and event.capture_seconds < self._events[-1].capture_seconds:
            raise EventOrderError(
                f"Event at capture time {event.capture_seconds:.3f}s precedes "
                f"last logged event at {self._events[-1].capture_seconds:.3f}s."
            )
        self._events.append(event)

    def snapshot(self) -> tuple[KillEvent, ...]:
        return tuple(self._events)

    def is_empty(self) -> bool:
        return not self._events

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[KillEvent]:
        return iter(tuple(self._events))


def export_events(events: tuple[KillEvent, ...] | list[KillEvent], output_path: str | Path) -> Path:
    """Export kill events to JSON (default) or CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".csv":
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=["index", "wall_clock", "capture_seconds", "event_type"])
            writer.writeheader()
            for idx, event in enumerate(events, start=1):
                writer.writerow(
                    {
                        "index": idx,
                        "wall_clock": f"{event.wall_clock:.3f}",
                        "capture_seconds": f"{event.capture_seconds:.3f}",
                        "event_type": event.event_type,
                    }
                )
    else:
        payload = [asdict(event) for event in events]
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    return path


def load_events(path: str | Path) -> list[KillEvent]:
    """Load kill events from the JSON export."""

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError("Event export must be a JSON array.")

    events: list[KillEvent] = []
    for idx, row in enumerate(payload, start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Event row {idx} must be an object.")
        events.append(
            KillEvent(
                wall_clock=float(row["wall_clock"]),
                capture_seconds=float(row["capture_seconds"]),
                event_type=str(row["event_type"]),
            )
        )
    return events
