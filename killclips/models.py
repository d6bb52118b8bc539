from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

ExportStatus = Literal["exported", "failed"]


@dataclass(frozen=True, slots=True)
class RawSample:
    """One recognized-text observation from a sampled frame."""

    text: str
    confidence: float
    capture_seconds: float


@dataclass(slots=True)
class RecognizedFrame:
    """Recognizer output for one captured frame."""

    frame_number: int
    capture_seconds: float
    samples: list[RawSample] = field(default_factory=list)
    wall_clock: float | None = None


@dataclass(frozen=True, slots=True)
class KillEvent:
    """An accepted kill detection, ordered by capture clock."""

    wall_clock: float
    capture_seconds: float
    event_type: str


@dataclass(frozen=True, slots=True)
class KillGroup:
    """Time-ordered run of kills whose adjacent wall-clock gaps fit the grouping gap."""

    events: tuple[KillEvent, ...]

    def __post_init__(self) -> None:
        if not self.events:
            raise ValueError("KillGroup requires at least one event.")

    @property
    def size(self) -> int:
        return len(self.events)

    @property
    def first(self) -> KillEvent:
        return self.events[0]

    @property
    def last(self) -> KillEvent:
        return self.events[-1]

    @property
    def label(self) -> str:
        from killclips.propose.kill_grouper import multi_kill_label

        return multi_kill_label(self.size)


@dataclass(frozen=True, slots=True)
class ClipPlan:
    """Clamped trim range for one kill group."""

    group_index: int
    group: KillGroup
    start_seconds: float
    end_seconds: float
    output_name: str

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass(frozen=True, slots=True)
class PlanFailure:
    """A group that could not be planned, with the reason."""

    group_index: int
    group: KillGroup
    error: str


@dataclass(frozen=True, slots=True)
class PendingSessionHandoff:
    """Finished capture session published for the clip-processing side."""

    session_video: str
    events: tuple[KillEvent, ...]
    published_at: float
    session_started_at: float | None = None


@dataclass(slots=True)
class GroupExportResult:
    group_index: int
    label: str
    size: int
    status: ExportStatus
    start_seconds: float | None = None
    end_seconds: float | None = None
    output_path: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ProcessingReport:
    """Aggregate outcome of processing one published session."""

    published_at: float
    session_video: str
    results: list[GroupExportResult] = field(default_factory=list)
    session_video_deleted: bool = False

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def created(self) -> int:
        return sum(1 for result in self.results if result.status == "exported")

    @property
    def summary(self) -> str:
        return f"{self.created} of {self.total} clips created"
