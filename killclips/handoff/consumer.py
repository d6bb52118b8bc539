from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

from killclips.config import DetectionConfig
from killclips.errors import DurationUnavailableError, KillClipsError, MissingSourceError
from killclips.handoff.store import HandoffStore, is_new_publication
from killclips.ingest.probe import probe_duration
from killclips.models import ClipPlan, GroupExportResult, PendingSessionHandoff, PlanFailure, ProcessingReport
from killclips.propose.clip_planner import plan_session
from killclips.propose.exporter import ClipExporter, export_clip_manifest
from killclips.propose.kill_grouper import group_kills

logger = logging.getLogger(__name__)

Uploader = Callable[[Path, ClipPlan], Awaitable[None]]
DurationProbe = Callable[[str | Path], float]


class HandoffState(str, Enum):
    IDLE = "idle"
    PUBLISHED = "published"
    CONSUMING = "consuming"
    CLEARED = "cleared"


def poll_tick(published_at: float | None, watermark: float | None, busy: bool) -> bool:
    """Map one poll observation to "dispatch a new processing pass" or not."""

    if busy or published_at is None:
        return False
    return is_new_publication(published_at, watermark)


class SessionProcessor:
    """Turns one published session into highlight clips.

    Groups are planned against a single duration probe and exported one at a
    time in session order. A group failure never aborts its siblings. The
    pending record is always cleared afterwards; the session video is deleted
    only when every group exported.
    """

    def __init__(
        self,
        store: HandoffStore,
        config: DetectionConfig,
        exporter: ClipExporter,
        output_dir: str | Path,
        grouping_gap_seconds: float = 5.0,
        duration_probe: DurationProbe = probe_duration,
        uploader: Uploader | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.exporter = exporter
        self.output_dir = Path(output_dir)
        self.grouping_gap_seconds = grouping_gap_seconds
        self.duration_probe = duration_probe
        self.uploader = uploader
        self.state = HandoffState.IDLE

    async def poll_once(self) -> ProcessingReport | None:
        record = self.store.try_consume()
        if record is None:
            return None
        return await self.process(record)

    async def process(self, record: PendingSessionHandoff) -> ProcessingReport:
        self.state = HandoffState.CONSUMING
        source_path = Path(record.session_video).expanduser()
        report = ProcessingReport(published_at=record.published_at, session_video=record.session_video)

        groups = group_kills(record.events, self.grouping_gap_seconds)
        logger.info(
            "Processing %s: %d kills in %d group(s) with gap=%.1fs",
            source_path.name,
            len(record.events),
            len(groups),
            self.grouping_gap_seconds,
        )

        duration, probe_error = await self._probe(source_path) if groups else (None, None)
        plans = plan_session(
            groups,
            duration,
            self.config.pre_roll_seconds,
            self.config.post_roll_seconds,
            session_started_at=record.session_started_at,
        )

        uploads: list[asyncio.Task[None]] = []
        for plan in plans:
            result = await self._export(source_path, plan, probe_error)
            report.results.append(result)
            if result.status == "exported" and self.uploader is not None and isinstance(plan, ClipPlan):
                uploads.append(asyncio.create_task(self._upload(self.uploader, Path(str(result.output_path)), plan)))

        self.store.clear()
        if report.created == report.total:
            source_path.unlink(missing_ok=True)
            report.session_video_deleted = True
            logger.info("Deleted session video %s", source_path)
        else:
            logger.warning("Retaining session video %s after %d failed group(s)", source_path, report.total - report.created)

        if uploads:
            await asyncio.gather(*uploads)

        if report.results:
            export_clip_manifest(report, self.output_dir / f"{source_path.stem}_clips.json")

        self.state = HandoffState.CLEARED
        logger.info("Session %s: %s", source_path.name, report.summary)
        return report

    async def _probe(self, source_path: Path) -> tuple[float | None, str | None]:
        try:
            return await asyncio.to_thread(self.duration_probe, source_path), None
        except (MissingSourceError, DurationUnavailableError) as exc:
            logger.error("Cannot determine duration of %s: %s", source_path, exc)
            return None, str(exc)

    async def _export(
        self,
        source_path: Path,
        plan: ClipPlan | PlanFailure,
        probe_error: str | None = None,
    ) -> GroupExportResult:
        group = plan.group
        if isinstance(plan, PlanFailure):
            return GroupExportResult(
                group_index=plan.group_index,
                label=group.label,
                size=group.size,
                status="failed",
                error=probe_error or plan.error,
            )

        result = GroupExportResult(
            group_index=plan.group_index,
            label=group.label,
            size=group.size,
            status="failed",
            start_seconds=plan.start_seconds,
            end_seconds=plan.end_seconds,
        )
        try:
            output_path = await asyncio.to_thread(self.exporter.export, source_path, plan, self.output_dir)
        except (KillClipsError, OSError) as exc:
            logger.error("Group clip #%d export failed: %s", plan.group_index, exc)
            result.error = str(exc)
            return result

        result.status = "exported"
        result.output_path = str(output_path)
        logger.info(
            "Group clip #%d exported (%s, %.1fs-%.1fs): %s",
            plan.group_index,
            group.label,
            plan.start_seconds,
            plan.end_seconds,
            output_path.name,
        )
        return result

    async def _upload(self, uploader: Uploader, clip_path: Path, plan: ClipPlan) -> None:
        try:
            await uploader(clip_path, plan)
        except Exception as exc:
            logger.warning("Upload failed for group clip #%d: %s", plan.group_index, exc)


class HandoffPoller:
    """Cooperative poll loop dispatching at most one processing pass at a time."""

    def __init__(
        self,
        processor: SessionProcessor,
        interval_seconds: float = 2.0,
        on_report: Callable[[ProcessingReport], None] | None = None,
    ) -> None:
        self.processor = processor
        self.store = processor.store
        self.interval_seconds = interval_seconds
        self.on_report = on_report
        self.reports: list[ProcessingReport] = []
        self._task: asyncio.Task[ProcessingReport] | None = None
        self._stop = asyncio.Event()

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        """Run one poll; returns True when a processing pass was dispatched."""

        busy = self.busy
        record = None if busy else self.store.read_pending()
        published_at = record.published_at if record is not None else None
        if record is None or not poll_tick(published_at, self.store.watermark(), busy):
            return False

        self.store.set_watermark(record.published_at)
        self.processor.state = HandoffState.PUBLISHED
        self._task = asyncio.create_task(self.processor.process(record))
        self._task.add_done_callback(self._on_done)
        return True

    async def run(self) -> None:
        logger.info("Polling %s every %.1fs", self.store.record_path, self.interval_seconds)
        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        if self._task is not None and not self._task.done():
            logger.info("Waiting for in-flight session processing to finish")
            await asyncio.wait([self._task])
        logger.info("Polling stopped")

    def stop(self) -> None:
        self._stop.set()

    def _on_done(self, task: asyncio.Task[ProcessingReport]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session processing crashed; publication will not be retried", exc_info=exc)
            return
        report = task.result()
        self.reports.append(report)
        if self.on_report is not None:
            self.on_report(report)
