from __future__ import annotations

import math


class CooldownGate:
    """Collapses repeated detections of one on-screen kill banner.

    A candidate is accepted when no finite prior acceptance exists, or when it
    lies strictly more than ``cooldown_seconds`` after the last accepted one.
    Rejected candidates do not move the window.
    """

    def __init__(self, cooldown_seconds: float) -> None:
        if cooldown_seconds < 0:
            raise ValueError(f"cooldown_seconds must be >= 0, got {cooldown_seconds}")
        self.cooldown_seconds = cooldown_seconds
        self._last_accepted: float | None = None

    @property
    def last_accepted(self) -> float | None:
        return self._last_accepted

    def accept(self, candidate_seconds: float) -> bool:
        last = self._last_accepted
        if last is None or not math.isfinite(last) or candidate_seconds - last > self.cooldown_seconds:
            self._last_accepted = candidate_seconds
            return True
        return False

    def reset(self) -> None:
        self._last_accepted = None
