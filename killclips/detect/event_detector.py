from __future__ import annotations

import logging
from collections.abc import Iterable

from killclips.config import DetectionConfig
from killclips.models import RawSample

logger = logging.getLogger(__name__)

NO_EVENT: None = None


def normalize_text(text: str, case_sensitive: bool) -> str:
    stripped = text.strip()
    return stripped if case_sensitive else stripped.upper()


def match_keyword(text: str, config: DetectionConfig) -> str | None:
    """Return the target keyword matched by ``text``, or ``NO_EVENT``.

    Pipeline: normalize -> avoid check -> target check. An avoid match vetoes
    every target match on the same text. Targets are tried in configured order
    and the keyword is returned as configured, not normalized.
    """

    normalized = normalize_text(text, config.case_sensitive)
    if not normalized:
        return NO_EVENT

    if any(normalize_text(keyword, config.case_sensitive) in normalized for keyword in config.avoid_keywords):
        return NO_EVENT

    return next(
        (
            keyword
            for keyword in config.target_keywords
            if normalize_text(keyword, config.case_sensitive) in normalized
        ),
        NO_EVENT,
    )


def detect_event(samples: Iterable[RawSample], config: DetectionConfig) -> str | None:
    """Classify one sampled frame; the first qualifying sample wins."""

    qualifying = (sample for sample in samples if sample.confidence >= config.confidence_threshold)
    matches = (match_keyword(sample.text, config) for sample in qualifying)
    return next((keyword for keyword in matches if keyword is not NO_EVENT), NO_EVENT)


class EventDetector:
    """Frame classifier bound to one detection config, with periodic text logging."""

    def __init__(self, config: DetectionConfig, detected_text_interval: int = 0) -> None:
        self.config = config
        self.detected_text_interval = detected_text_interval
        self.frames_analyzed = 0

    def analyze(self, samples: list[RawSample]) -> str | None:
        self.frames_analyzed += 1
        if self.detected_text_interval and self.frames_analyzed % self.detected_text_interval == 0:
            logger.debug(
                "Frame %d recognized text: %s",
                self.frames_analyzed,
                [(sample.text, round(sample.confidence, 3)) for sample in samples],
            )

        event_type = detect_event(samples, self.config)
        if event_type is not NO_EVENT:
            logger.info("Detected '%s' at capture time %.3fs", event_type, samples[0].capture_seconds)
        return event_type
