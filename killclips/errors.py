from __future__ import annotations


class KillClipsError(RuntimeError):
    """Base class for recoverable pipeline failures."""


class ConfigurationError(ValueError):
    """Invalid settings or detection config, raised at load time."""


class EventOrderError(ValueError):
    """An event was appended out of capture-clock order."""


class MissingSourceError(KillClipsError):
    """The session video referenced by a handoff cannot be read."""


class DurationUnavailableError(KillClipsError):
    """The total duration of a session video could not be determined."""


class ExportError(KillClipsError):
    """The clip exporter failed to render one clip."""


class HandoffCorruptionError(KillClipsError):
    """A pending handoff record is malformed or index-misaligned."""
