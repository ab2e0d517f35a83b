from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from ..models import PendingAsk
from ..settings_store import SettingsStore

logger = logging.getLogger("weblm.hub")

ENABLE_SCREENSHOT_KEY = "enableScreenshot"


class PanelStateRegistry:
    """Per-window side-panel openness, updated only by explicit notifications.

    The host offers no query primitive, so this map is the authoritative copy.
    Reads are heuristically fresh: a panel closed without a notification stays
    "open" here until the next CLOSE arrives. Readers re-poll periodically.
    """

    def __init__(self) -> None:
        self._open_by_window: Dict[int, bool] = {}

    def mark_open(self, window_id: int) -> None:
        self._open_by_window[window_id] = True

    def mark_closed(self, window_id: int) -> None:
        self._open_by_window[window_id] = False

    def is_open(self, window_id: Optional[int]) -> bool:
        if window_id is None:
            return False
        return self._open_by_window.get(window_id, False)


class FeatureFlagCache:
    """Boolean setting cached with a short TTL (bounded staleness, not consistency)."""

    def __init__(
        self,
        store: SettingsStore,
        key: str = ENABLE_SCREENSHOT_KEY,
        ttl: float = 1.5,
        default: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._key = key
        self._ttl = ttl
        self._default = default
        self._clock = clock
        self._value: Optional[bool] = None
        self._ts = 0.0

    async def get(self) -> bool:
        """Purpose: Return the flag, reading the store at most once per TTL window.
        Inputs/Outputs: No inputs; returns the boolean flag.
        Side Effects / State: Refreshes the cached value and timestamp on expiry.
        Dependencies: SettingsStore.get and the injected clock.
        Failure Modes: Store errors fall back to the default (enabled), and that value
            is cached for the TTL like a normal read.
        If Removed: Every chat call hits the store, and image stripping cannot be toggled.
        Testing Notes: Advance a fake clock across the TTL and count store reads.
        """
        # Serve from cache inside the TTL; an unset key means the default.
        now = self._clock()
        if self._value is not None and now - self._ts < self._ttl:
            return self._value
        try:
            stored = await self._store.get([self._key])
            raw = stored.get(self._key)
            value = self._default if raw is None else bool(raw)
        except Exception:
            logger.warning("feature flag read failed key=%s; using default", self._key, exc_info=True)
            value = self._default
        self._value = value
        self._ts = now
        return value

    def invalidate(self) -> None:
        self._value = None


class PendingAskSlot:
    """Single-slot mailbox for a question sent before the controller listens."""

    def __init__(self) -> None:
        self._pending: Optional[PendingAsk] = None

    def put(self, question: str, ts: Optional[float] = None) -> PendingAsk:
        self._pending = PendingAsk(question=question, ts=ts if ts is not None else time.time())
        return self._pending

    def take(self) -> Optional[PendingAsk]:
        pending, self._pending = self._pending, None
        return pending
