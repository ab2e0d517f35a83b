"""Hands-free reading: a steady scroll toward the bottom of the page."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .document import PageDocument
from .overlay import PeriodicTask

logger = logging.getLogger("weblm.page")

# Pixels moved per frame.
SCROLL_SPEEDS = {"slow": 1.0, "normal": 2.0, "fast": 4.0}
DEFAULT_SPEED = "normal"


class AutoScroller(PeriodicTask):
    """Moves the view a fixed step every frame until stopped or at the bottom."""

    def __init__(
        self,
        document: PageDocument,
        interval: float,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(interval)
        self._document = document
        self.on_complete = on_complete
        self.speed = DEFAULT_SPEED

    @property
    def step(self) -> float:
        return SCROLL_SPEEDS[self.speed]

    async def start(self, speed: Optional[str] = None) -> None:
        """Start (or re-pace) the scroll; unknown speeds run at the default."""
        speed = speed or DEFAULT_SPEED
        if speed not in SCROLL_SPEEDS:
            logger.warning("unknown auto-scroll speed=%r; using %s", speed, DEFAULT_SPEED)
            speed = DEFAULT_SPEED
        self.speed = speed
        if self.running:
            return
        logger.info("auto-scroll started speed=%s from=%.0f", speed, self._document.scroll_y)
        await super().start()

    async def tick(self) -> None:
        document = self._document
        document.set_scroll(document.scroll_y + self.step)
        if document.scroll_y < document.max_scroll:
            return
        # Reached the bottom: end the loop from inside, never await stop() here.
        self._running = False
        logger.info("auto-scroll reached the end at=%.0f", document.scroll_y)
        if self.on_complete is not None:
            self.on_complete()
