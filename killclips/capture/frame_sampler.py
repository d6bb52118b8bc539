from __future__ import annotations

from killclips.config import DetectionConfig
from killclips.errors import ConfigurationError


class FrameSampler:
    """Selects every Nth frame of a 1-based frame counter for recognition."""

    def __init__(self, interval: int) -> None:
        if interval < 1:
            raise ConfigurationError(f"frame skip interval must be >= 1, got {interval}")
        self.interval = interval

    @classmethod
    def from_config(cls, config: DetectionConfig) -> FrameSampler:
        return cls(config.frame_skip_interval)

    def should_sample(self, frame_number: int) -> bool:
        return frame_number > 0 and frame_number % self.interval == 0
