from __future__ import annotations

import asyncio
import json
from pathlib import Path

from killclips.config import PRESETS
from killclips.errors import ExportError, MissingSourceError
from killclips.handoff.consumer import HandoffPoller, HandoffState, SessionProcessor, poll_tick
from killclips.handoff.store import HandoffStore
from killclips.models import ClipPlan, KillEvent

BASE = 1_700_000_000.0


class _FakeExporter:
    def __init__(self, fail_groups: set[int] | None = None) -> None:
        self.fail_groups = fail_groups or set()
        self.calls: list[ClipPlan] = []

    def export(self, session_video: str | Path, plan: ClipPlan, output_dir: str | Path) -> Path:
        self.calls.append(plan)
        if plan.group_index in self.fail_groups:
            raise ExportError(f"ffmpeg failed to export {plan.output_name}.")
        output_path = Path(output_dir) / plan.output_name
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"clip")
        return output_path


def _events(*offsets: float) -> list[KillEvent]:
    return [KillEvent(wall_clock=BASE + offset, capture_seconds=offset, event_type="ELIMINATED") for offset in offsets]


def _setup(tmp_path: Path, *offsets: float, exporter: _FakeExporter | None = None, **kwargs: object):
    session_video = tmp_path / "sessions" / "session_01.mp4"
    session_video.parent.mkdir(parents=True)
    session_video.write_bytes(b"video")

    store = HandoffStore(tmp_path / "handoff", tmp_path / "state")
    store.publish(session_video, _events(*offsets), published_at=BASE + 600.0, session_started_at=BASE)
    kwargs.setdefault("duration_probe", lambda _: 300.0)

    processor = SessionProcessor(
        store=store,
        config=PRESETS["Balanced"],
        exporter=exporter or _FakeExporter(),
        output_dir=tmp_path / "clips",
        **kwargs,
    )
    return session_video, store, processor


def test_poll_tick_decisions() -> None:
    assert poll_tick(None, None, busy=False) is False
    assert poll_tick(10.0, None, busy=False) is True
    assert poll_tick(10.0, 10.0, busy=False) is False
    assert poll_tick(11.0, 10.0, busy=True) is False
    assert poll_tick(11.0, 10.0, busy=False) is True


def test_all_groups_exported_deletes_session_video(tmp_path: Path) -> None:
    session_video, store, processor = _setup(tmp_path, 10.0, 12.0, 14.0, 60.0)

    report = asyncio.run(processor.poll_once())

    assert report is not None
    assert report.summary == "2 of 2 clips created"
    assert [result.label for result in report.results] == ["Triple Kill", "Kill"]
    assert report.results[0].start_seconds == 5.0
    assert report.results[0].end_seconds == 17.0
    assert report.session_video_deleted is True
    assert not session_video.exists()
    assert store.read_pending() is None
    assert processor.state is HandoffState.CLEARED

    manifest = json.loads((tmp_path / "clips" / "session_01_clips.json").read_text(encoding="utf-8"))
    assert manifest["summary"] == "2 of 2 clips created"


def test_partial_failure_keeps_session_video_and_siblings(tmp_path: Path) -> None:
    exporter = _FakeExporter(fail_groups={1})
    session_video, store, processor = _setup(tmp_path, 10.0, 60.0, 120.0, exporter=exporter)

    report = asyncio.run(processor.poll_once())

    assert report is not None
    assert [plan.group_index for plan in exporter.calls] == [1, 2, 3]
    assert [result.status for result in report.results] == ["failed", "exported", "exported"]
    assert report.summary == "2 of 3 clips created"
    assert "ffmpeg failed" in str(report.results[0].error)
    assert session_video.exists()
    assert report.session_video_deleted is False
    assert store.read_pending() is None


def test_missing_session_video_fails_every_group(tmp_path: Path) -> None:
    def _probe(path: str | Path) -> float:
        raise MissingSourceError(f"Session video not found: {path}")

    exporter = _FakeExporter()
    session_video, store, processor = _setup(tmp_path, 10.0, 60.0, exporter=exporter, duration_probe=_probe)
    session_video.unlink()

    report = asyncio.run(processor.poll_once())

    assert report is not None
    assert report.summary == "0 of 2 clips created"
    assert all("Session video not found" in str(result.error) for result in report.results)
    assert exporter.calls == []
    assert store.read_pending() is None


def test_session_without_kills_clears_and_deletes(tmp_path: Path) -> None:
    session_video, store, processor = _setup(tmp_path)

    report = asyncio.run(processor.poll_once())

    assert report is not None
    assert report.summary == "0 of 0 clips created"
    assert report.session_video_deleted is True
    assert not session_video.exists()
    assert not (tmp_path / "clips" / "session_01_clips.json").exists()


def test_poll_once_processes_publication_once(tmp_path: Path) -> None:
    _, store, processor = _setup(tmp_path, 10.0)

    first = asyncio.run(processor.poll_once())
    second = asyncio.run(processor.poll_once())

    assert first is not None
    assert second is None


def test_uploads_run_for_exported_clips_and_failures_are_logged(tmp_path: Path) -> None:
    uploaded: list[str] = []

    async def _uploader(clip_path: Path, plan: ClipPlan) -> None:
        if plan.group_index == 2:
            raise ConnectionError("upload refused")
        uploaded.append(clip_path.name)

    _, _, processor = _setup(tmp_path, 10.0, 60.0, uploader=_uploader)

    report = asyncio.run(processor.poll_once())

    assert report is not None
    assert report.summary == "2 of 2 clips created"
    assert uploaded == [Path(str(report.results[0].output_path)).name]


def test_poller_dispatches_single_pass_per_publication(tmp_path: Path) -> None:
    _, store, processor = _setup(tmp_path, 10.0, 11.0)
    seen: list[str] = []
    poller = HandoffPoller(processor, interval_seconds=0.01, on_report=lambda report: seen.append(report.summary))

    async def _scenario() -> tuple[bool, bool, bool]:
        first = await poller.tick()
        while_busy = await poller.tick()
        while poller.busy:
            await asyncio.sleep(0)
        await asyncio.sleep(0)
        after = await poller.tick()
        return first, while_busy, after

    first, while_busy, after = asyncio.run(_scenario())

    assert (first, while_busy, after) == (True, False, False)
    assert seen == ["1 of 1 clips created"]
    assert store.watermark() == BASE + 600.0


def test_poller_run_stops_after_in_flight_work(tmp_path: Path) -> None:
    session_video, store, processor = _setup(tmp_path, 10.0)
    poller = HandoffPoller(processor, interval_seconds=0.01)

    async def _scenario() -> None:
        runner = asyncio.create_task(poller.run())
        while not poller.reports:
            await asyncio.sleep(0.01)
        poller.stop()
        await runner

    asyncio.run(_scenario())

    assert len(poller.reports) == 1
    assert not session_video.exists()
    assert store.read_pending() is None


def test_home_relative_session_video_is_deleted(tmp_path: Path, monkeypatch) -> None:
    home = tmp_path / "home"
    home.mkdir()
    session_video = home / "session_02.mp4"
    session_video.write_bytes(b"video")
    monkeypatch.setenv("HOME", str(home))

    store = HandoffStore(tmp_path / "handoff", tmp_path / "state")
    store.publish("~/session_02.mp4", _events(10.0), published_at=BASE + 600.0, session_started_at=BASE)
    processor = SessionProcessor(
        store=store,
        config=PRESETS["Balanced"],
        exporter=_FakeExporter(),
        output_dir=tmp_path / "clips",
        duration_probe=lambda _: 300.0,
    )

    report = asyncio.run(processor.poll_once())

    assert report is not None
    assert report.session_video_deleted is True
    assert not session_video.exists()
    assert (tmp_path / "clips" / "session_02_clips.json").exists()
