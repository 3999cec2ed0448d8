"""Core rules for Where's The Ball: hit testing, scoring and the round clock."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Optional

from .models import BoundingBox

logger = logging.getLogger(__name__)

ROUND_SECONDS = 30
WARNING_AT = 5
HIT_TOLERANCE = 0.05  # fraction of the image dimension
BASE_SCORE = 100
POINTS_PER_SECOND = 10
PINPOINT_SIZE = 0.02


class RoundState(str, enum.Enum):
    IDLE = "idle"
    ACQUIRING_IMAGE = "acquiring_image"
    WAITING_FOR_HOST = "waiting_for_host"
    AWAITING_DETECTION = "awaiting_detection"
    ACTIVE = "active"
    HIT = "hit"
    TIMED_OUT = "timed_out"
    ERROR = "error"
    GAME_COMPLETED = "game_completed"


def is_hit(x: float, y: float, box: BoundingBox, tolerance: float = HIT_TOLERANCE) -> bool:
    """True when (x, y) lands inside the box grown by ``tolerance`` on every side."""

    return box.contains(x, y, tolerance)


def score_for(time_remaining: int) -> int:
    return BASE_SCORE + max(0, time_remaining * POINTS_PER_SECOND)


def pinpoint_box(x: float, y: float, size: float = PINPOINT_SIZE) -> BoundingBox:
    half = size / 2
    return BoundingBox(
        x_min=max(0.0, x - half),
        y_min=max(0.0, y - half),
        x_max=min(1.0, x + half),
        y_max=min(1.0, y + half),
    )


class RoundTimer:
    """Per-round countdown that ticks once per interval.

    ``on_warning`` fires once when the remaining time reaches ``warning_at``;
    ``on_expire`` fires once at zero, after which the timer stops by itself.
    """

    def __init__(
        self,
        seconds: int = ROUND_SECONDS,
        tick: float = 1.0,
        warning_at: int = WARNING_AT,
        on_tick: Optional[Callable[[int], None]] = None,
        on_warning: Optional[Callable[[], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
    ) -> None:
        self.seconds = seconds
        self.tick = tick
        self.warning_at = warning_at
        self.on_tick = on_tick
        self.on_warning = on_warning
        self.on_expire = on_expire
        self.remaining = seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self.remaining = self.seconds
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def reset(self) -> None:
        self.stop()
        self.remaining = self.seconds

    async def _run(self) -> None:
        warned = False
        while self.remaining > 0:
            await asyncio.sleep(self.tick)
            self.remaining -= 1
            if self.on_tick:
                self.on_tick(self.remaining)
            if self.remaining == self.warning_at and not warned:
                warned = True
                if self.on_warning:
                    self.on_warning()
        self._task = None
        if self.on_expire:
            self.on_expire()
