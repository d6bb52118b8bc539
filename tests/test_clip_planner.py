from __future__ import annotations

import math
from datetime import datetime

import pytest

from killclips.errors import DurationUnavailableError
from killclips.models import ClipPlan, KillEvent, KillGroup, PlanFailure
from killclips.propose.clip_planner import CLIP_TIMESTAMP_FORMAT, clip_output_name, plan_clip, plan_session

BASE = 1_700_000_000.0


def _group(*offsets: float) -> KillGroup:
    return KillGroup(
        events=tuple(
            KillEvent(wall_clock=BASE + offset, capture_seconds=offset, event_type="ELIMINATED") for offset in offsets
        )
    )


def test_plan_clip_clamps_to_session_bounds() -> None:
    early = plan_clip(_group(2.0), 1, 10.0, pre_roll_seconds=5.0, post_roll_seconds=3.0)
    late = plan_clip(_group(9.0), 2, 10.0, pre_roll_seconds=5.0, post_roll_seconds=3.0)

    assert (early.start_seconds, early.end_seconds) == (0.0, 5.0)
    assert (late.start_seconds, late.end_seconds) == (4.0, 10.0)


def test_plan_clip_spans_first_to_last_event() -> None:
    plan = plan_clip(_group(30.0, 32.5, 34.0), 1, 600.0, pre_roll_seconds=5.0, post_roll_seconds=3.0)

    assert plan.start_seconds == 25.0
    assert plan.end_seconds == 37.0
    assert plan.duration_seconds == pytest.approx(12.0)


def test_plan_clip_keeps_start_not_after_end_when_event_is_past_duration() -> None:
    plan = plan_clip(_group(50.0), 1, 20.0, pre_roll_seconds=5.0, post_roll_seconds=3.0)

    assert plan.start_seconds == plan.end_seconds == 20.0


@pytest.mark.parametrize("offset", [11.0, 12.3456, 40.0])
def test_plan_clip_stays_inside_fractional_duration(offset: float) -> None:
    duration = 12.345678

    plan = plan_clip(_group(offset), 1, duration, pre_roll_seconds=5.0, post_roll_seconds=3.0)

    assert 0.0 <= plan.start_seconds <= plan.end_seconds <= duration


@pytest.mark.parametrize("duration", [None, math.nan, math.inf, -1.0])
def test_plan_clip_requires_known_duration(duration: float | None) -> None:
    with pytest.raises(DurationUnavailableError):
        plan_clip(_group(1.0), 1, duration, pre_roll_seconds=5.0, post_roll_seconds=3.0)


def test_plan_clip_falls_back_to_wall_clock_offset() -> None:
    group = KillGroup(events=(KillEvent(wall_clock=BASE + 12.0, capture_seconds=math.nan, event_type="ELIMINATED"),))

    plan = plan_clip(group, 1, 60.0, pre_roll_seconds=5.0, post_roll_seconds=3.0, session_started_at=BASE)

    assert (plan.start_seconds, plan.end_seconds) == (7.0, 15.0)


def test_plan_session_reports_unplannable_groups() -> None:
    missing_offset = KillGroup(
        events=(KillEvent(wall_clock=BASE + 40.0, capture_seconds=math.nan, event_type="ELIMINATED"),)
    )

    plans = plan_session([_group(5.0, 6.0), missing_offset], 120.0, 5.0, 3.0)

    assert isinstance(plans[0], ClipPlan)
    assert plans[0].group_index == 1
    assert isinstance(plans[1], PlanFailure)
    assert plans[1].group_index == 2
    assert "no capture-clock offset" in plans[1].error


def test_plan_session_without_duration_fails_every_group() -> None:
    plans = plan_session([_group(1.0), _group(30.0)], None, 5.0, 3.0)

    assert all(isinstance(plan, PlanFailure) for plan in plans)


def test_clip_output_name_marks_multi_kills() -> None:
    stamp = datetime.fromtimestamp(BASE).strftime(CLIP_TIMESTAMP_FORMAT)

    assert clip_output_name(1, BASE, 1) == f"killGroup_1_{stamp}.mp4"
    assert clip_output_name(3, BASE, 4) == f"killGroup_3_{stamp}_multi_4.mp4"
