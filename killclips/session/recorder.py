from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from killclips.capture.frame_sampler import FrameSampler
from killclips.config import DetectionConfig
from killclips.detect.cooldown import CooldownGate
from killclips.detect.event_detector import NO_EVENT, EventDetector
from killclips.handoff.store import HandoffStore
from killclips.models import KillEvent, PendingSessionHandoff, RawSample, RecognizedFrame
from killclips.session.event_log import SessionEventLog

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CaptureSession:
    """Producer side of one recording session.

    Frames must arrive serially on one thread. Each frame runs
    sampler -> detector -> cooldown gate -> event log, keyed to the capture
    clock; wall-clock times are ``started_at + capture_seconds`` unless the
    frame carries its own.
    """

    def __init__(
        self,
        config: DetectionConfig,
        session_video: str | Path,
        started_at: float | None = None,
        detected_text_interval: int = 0,
        clock: Clock = time.time,
    ) -> None:
        self.config = config
        self.session_video = Path(session_video)
        self.started_at = clock() if started_at is None else started_at
        self.sampler = FrameSampler.from_config(config)
        self.detector = EventDetector(config, detected_text_interval=detected_text_interval)
        self.gate = CooldownGate(config.cooldown_seconds)
        self.event_log = SessionEventLog()
        self.frames_seen = 0
        self._clock = clock
        self._closed = False

    def process_frame(
        self,
        frame_number: int,
        samples: list[RawSample],
        capture_seconds: float,
        wall_clock: float | None = None,
    ) -> KillEvent | None:
        """Feed one captured frame; returns the accepted event, if any."""

        if self._closed:
            raise RuntimeError("Capture session already ended.")

        self.frames_seen += 1
        if not self.sampler.should_sample(frame_number):
            return None

        event_type = self.detector.analyze(samples)
        if event_type is NO_EVENT:
            return None

        if not self.gate.accept(capture_seconds):
            logger.debug("Suppressed '%s' at %.3fs inside cooldown", event_type, capture_seconds)
            return None

        event = KillEvent(
            wall_clock=wall_clock if wall_clock is not None else self.started_at + capture_seconds,
            capture_seconds=capture_seconds,
            event_type=event_type,
        )
        self.event_log.append(event)
        logger.info("Recorded kill #%d (%s) at %.3fs", len(self.event_log), event_type, capture_seconds)
        return event

    def process_frames(self, frames: Iterable[RecognizedFrame]) -> list[KillEvent]:
        accepted: list[KillEvent] = []
        for frame in frames:
            event = self.process_frame(
                frame.frame_number,
                frame.samples,
                frame.capture_seconds,
                wall_clock=frame.wall_clock,
            )
            if event is not None:
                accepted.append(event)
        return accepted

    def end(self, store: HandoffStore | None = None) -> PendingSessionHandoff | None:
        """Close the session and publish its events; returns the published record."""

        self._closed = True
        events = self.event_log.snapshot()
        logger.info(
            "Session %s ended after %d frames with %d kills",
            self.session_video.name,
            self.frames_seen,
            len(events),
        )
        if store is None:
            return None
        return store.publish(
            self.session_video,
            events,
            published_at=self._clock(),
            session_started_at=self.started_at,
        )
