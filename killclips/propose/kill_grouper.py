from __future__ import annotations

from collections.abc import Iterable

from killclips.models import KillEvent, KillGroup

_NAMED_LABELS = {
    1: "Kill",
    2: "Double Kill",
    3: "Triple Kill",
    4: "Quad Kill",
    5: "Penta Kill",
}


def group_kills(events: Iterable[KillEvent], gap_seconds: float) -> list[KillGroup]:
    """Cluster kills into highlight windows by wall-clock gap.

    Events are stably sorted by wall clock, then each event joins the current
    group when its gap to the immediately preceding event is <= ``gap_seconds``.
    The concatenated groups equal the sorted input exactly.
    """

    timeline = sorted(events, key=lambda event: event.wall_clock)
    if not timeline:
        return []

    groups: list[KillGroup] = []
    current: list[KillEvent] = [timeline[0]]

    for previous, event in zip(timeline, timeline[1:]):
        if event.wall_clock - previous.wall_clock <= gap_seconds:
            current.append(event)
            continue
        groups.append(KillGroup(events=tuple(current)))
        current = [event]

    groups.append(KillGroup(events=tuple(current)))
    return groups


def multi_kill_label(size: int) -> str:
    if size < 1:
        raise ValueError(f"Group size must be >= 1, got {size}")
    return _NAMED_LABELS.get(size, f"Multi Kill x{size}")
