"""
Timed lift animation triggered by a hand gesture.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

import numpy as np

LOGGER = logging.getLogger(__name__)


class AnimationTrigger:
    """Linear lift from zero to ``peak_height`` over ``duration`` seconds.

    The state is either inactive or active with a start time. Only
    :meth:`trigger` starts it; :meth:`current_offset` retires it once the
    duration has elapsed. Re-triggering while active does not restart it.
    """

    def __init__(
        self,
        duration: float = 1.0,
        peak_height: float = 0.05,
        axis: Sequence[float] = (0.0, 0.0, 1.0),
        clock: Callable[[], float] = time.monotonic,
    ):
        if duration <= 0:
            raise ValueError(f"Animation duration must be positive, got {duration}")

        axis_arr = np.asarray(axis, dtype=np.float64).reshape(3)
        norm = np.linalg.norm(axis_arr)
        if norm == 0:
            raise ValueError("Animation axis must be non-zero")

        self.duration = float(duration)
        self.peak_height = float(peak_height)
        self.axis = axis_arr / norm
        self._clock = clock
        self._active = False
        self._start_time: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def start_time(self) -> Optional[float]:
        return self._start_time

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else float(now)

    def _expire(self, now: float):
        if self._active and now - self._start_time > self.duration:
            self._active = False
            self._start_time = None
            LOGGER.debug("Animation finished")

    def trigger(self, now: Optional[float] = None):
        """Start the animation unless it is already playing."""
        now = self._now(now)
        self._expire(now)
        if self._active:
            return
        self._active = True
        self._start_time = now
        LOGGER.info("Animation triggered")

    def current_offset(self, now: Optional[float] = None) -> np.ndarray:
        """Return the marker-space translation for the current time."""
        now = self._now(now)
        self._expire(now)
        if not self._active:
            return np.zeros(3, dtype=np.float32)

        elapsed = max(0.0, now - self._start_time)
        height = self.peak_height * (elapsed / self.duration)
        return (self.axis * height).astype(np.float32)
