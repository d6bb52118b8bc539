from __future__ import annotations

import logging
import math
from datetime import datetime

from killclips.errors import DurationUnavailableError
from killclips.models import ClipPlan, KillEvent, KillGroup, PlanFailure

logger = logging.getLogger(__name__)

CLIP_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


def plan_clip(
    group: KillGroup,
    group_index: int,
    session_duration: float | None,
    pre_roll_seconds: float,
    post_roll_seconds: float,
    session_started_at: float | None = None,
) -> ClipPlan:
    """Convert a kill group into a padded trim range clamped to the session.

    Guarantees ``0 <= start <= end <= session_duration``, even when padding or
    event offsets fall outside the recording.
    """

    duration = _require_duration(session_duration)

    first_offset = _event_offset(group.first, session_started_at)
    last_offset = _event_offset(group.last, session_started_at)

    # Millisecond rounding must not carry either bound past the duration.
    start = min(round(_clamp(first_offset - pre_roll_seconds, 0.0, duration), 3), duration)
    end = min(round(_clamp(last_offset + post_roll_seconds, start, duration), 3), duration)

    return ClipPlan(
        group_index=group_index,
        group=group,
        start_seconds=start,
        end_seconds=end,
        output_name=clip_output_name(group_index, group.first.wall_clock, group.size),
    )


def plan_session(
    groups: list[KillGroup],
    session_duration: float | None,
    pre_roll_seconds: float,
    post_roll_seconds: float,
    session_started_at: float | None = None,
) -> list[ClipPlan | PlanFailure]:
    """Plan every group; a group that cannot be planned is reported, not raised."""

    plans: list[ClipPlan | PlanFailure] = []
    for group_index, group in enumerate(groups, start=1):
        try:
            plans.append(
                plan_clip(
                    group,
                    group_index,
                    session_duration,
                    pre_roll_seconds,
                    post_roll_seconds,
                    session_started_at=session_started_at,
                )
            )
        except (DurationUnavailableError, ValueError) as exc:
            logger.warning("Skipping group %d (%s): %s", group_index, group.label, exc)
            plans.append(PlanFailure(group_index=group_index, group=group, error=str(exc)))
    return plans


def clip_output_name(group_index: int, first_wall_clock: float, size: int) -> str:
    timestamp = datetime.fromtimestamp(first_wall_clock).strftime(CLIP_TIMESTAMP_FORMAT)
    suffix = f"_multi_{size}" if size >= 2 else ""
    return f"killGroup_{group_index}_{timestamp}{suffix}.mp4"


def _require_duration(session_duration: float | None) -> float:
    if session_duration is None or not math.isfinite(session_duration) or session_duration < 0:
        raise DurationUnavailableError(f"Session duration is unavailable: {session_duration!r}")
    return float(session_duration)


def _event_offset(event: KillEvent, session_started_at: float | None) -> float:
    if math.isfinite(event.capture_seconds):
        return event.capture_seconds
    if session_started_at is None:
        raise ValueError("Event has no capture-clock offset and no session start time.")
    return event.wall_clock - session_started_at


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))
