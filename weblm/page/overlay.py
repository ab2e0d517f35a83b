"""Self-healing page UI: the floating entry point, URL watching, panel polling.

Page scripts may delete injected nodes or navigate client-side without firing
any event. Each watcher here pairs an immediate trigger (mutation record,
history call) with a periodic check so the overlay converges back.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Callable, List, Optional

from ..hub.messages import RequestKind, Sender
from ..hub.router import Hub
from .document import MutationRecord, PageDocument, PageElement

logger = logging.getLogger("weblm.page")

FLOATING_BUTTON_ID = "pe-floating-btn"
OVERLAY_ATTR = "data-weblm-overlay"
FLOATING_BUTTON_LABEL = "Open WebLM side panel"


class PeriodicTask:
    """Run ``tick`` every ``interval`` seconds between start() and stop()."""

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            if not self._running:
                break
            try:
                await self.tick()
            except Exception as exc:
                logger.warning("%s tick failed: %s", type(self).__name__, exc)

    async def tick(self) -> None:
        raise NotImplementedError


class OverlayGuard(PeriodicTask):
    """Keeps the floating entry point attached and in its requested visibility."""

    def __init__(self, document: PageDocument, interval: float = 1.0) -> None:
        super().__init__(interval)
        self._document = document
        self._button: Optional[PageElement] = None
        self._visible = True
        self._disconnect: Optional[Callable[[], None]] = None
        self.recreated = 0

    @property
    def button(self) -> Optional[PageElement]:
        return self._button

    @property
    def visible(self) -> bool:
        return self._visible

    def ensure(self) -> PageElement:
        """Return the attached button, creating it when it is missing."""
        existing = self._document.get_element_by_id(FLOATING_BUTTON_ID)
        if existing is not None:
            self._button = existing
            self._apply_visibility()
            return existing
        button = PageElement(
            tag="button",
            attrs={"id": FLOATING_BUTTON_ID, "aria-label": FLOATING_BUTTON_LABEL, OVERLAY_ATTR: "true"},
        )
        self._button = button
        self._apply_visibility()
        self._document.append_child(button)
        return button

    def set_visible(self, visible: bool) -> None:
        self._visible = visible
        self._apply_visibility()

    async def start(self) -> None:
        self.ensure()
        if self._disconnect is None:
            self._disconnect = self._document.observe(self._on_mutation)
        await super().start()

    async def stop(self) -> None:
        if self._disconnect is not None:
            self._disconnect()
            self._disconnect = None
        await super().stop()

    async def tick(self) -> None:
        self._heal("periodic check")

    def _on_mutation(self, record: MutationRecord) -> None:
        if record.removed:
            self._heal("mutation")

    def _heal(self, trigger: str) -> None:
        if self._button is not None and self._document.contains(self._button):
            return
        logger.info("floating entry point missing; recreating trigger=%s", trigger)
        self.recreated += 1
        self._button = None
        self.ensure()

    def _apply_visibility(self) -> None:
        if self._button is not None:
            self._button.set_style("display", "flex" if self._visible else "none")


class LocationWatcher(PeriodicTask):
    """Detects client-side navigation by polling and by wrapping the history API."""

    def __init__(self, document: PageDocument, on_change: Callable[[str], None], interval: float = 0.5) -> None:
        super().__init__(interval)
        self._document = document
        self._on_change = on_change
        self._last_url = document.url
        self._originals: List[tuple] = []

    @property
    def last_url(self) -> str:
        return self._last_url

    async def start(self) -> None:
        self._last_url = self._document.url
        self._wrap_history()
        await super().start()

    async def stop(self) -> None:
        await super().stop()
        history = self._document.history
        for name, original in self._originals:
            setattr(history, name, original)
        self._originals = []

    async def tick(self) -> None:
        self.check()

    def check(self) -> bool:
        """Fire on_change once per distinct URL; returns whether it fired."""
        url = self._document.url
        if url == self._last_url:
            return False
        logger.info("location changed from=%s to=%s", self._last_url, url)
        self._last_url = url
        self._on_change(url)
        return True

    def _wrap_history(self) -> None:
        if self._originals:
            return
        history = self._document.history
        for name in ("push_state", "replace_state"):
            original = getattr(history, name)
            self._originals.append((name, original))
            setattr(history, name, self._wrapped(original))

    def _wrapped(self, original: Callable[[str], None]) -> Callable[[str], None]:
        def call(url: str) -> None:
            original(url)
            self.check()

        return call


class PanelStatePoller(PeriodicTask):
    """Reconciles entry-point visibility with the hub's panel state.

    The hub's state is only as fresh as its last open/close notification, so
    this poll is the fallback. A failed check reports "closed" so the entry
    point stays reachable.
    """

    def __init__(
        self,
        hub: Hub,
        sender: Sender,
        on_state: Callable[[bool], None],
        interval: float = 2.0,
    ) -> None:
        super().__init__(interval)
        self._hub = hub
        self._sender = sender
        self._on_state = on_state

    async def start(self) -> None:
        await self.check_now()
        await super().start()

    async def tick(self) -> None:
        await self.check_now()

    async def check_now(self) -> bool:
        result = await self._hub.submit(
            RequestKind.CHECK_SIDE_PANEL_STATE,
            {"window_id": self._sender.window_id},
            sender=self._sender,
        )
        is_open = bool(result.get("success") and result.get("is_open"))
        if not result.get("success"):
            logger.warning("panel state check failed window=%s error=%s", self._sender.window_id, result.get("error"))
        self._on_state(is_open)
        return is_open
