"""Request handlers owned by the hub context.

Each handler takes ``(payload, sender)`` and returns a ``{"success": ...}`` dict.
Exceptions raised here are converted by ``Hub.submit``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Protocol

from ..errors import NEEDS_USER_GESTURE, CapabilityError, UnsupportedOperationError
from ..provider import tasks
from ..provider.client import ProviderClient
from .messages import EventKind, RequestKind, Sender, fail, ok, resolve_window_id
from .router import Hub
from .state import FeatureFlagCache

logger = logging.getLogger("weblm.hub")

USER_GESTURE_RE = re.compile(r"may only be called in response to a user gesture", re.IGNORECASE)


class ViewportRasterizer(Protocol):
    async def capture(self, window_id: Optional[int]) -> str: ...


class PanelHost(Protocol):
    """Host side-panel toggle: open only, there is no query primitive."""

    async def open(self, window_id: int) -> None: ...


class HubHandlers:
    """Hub-side implementations of the request taxonomy."""

    def __init__(
        self,
        hub: Hub,
        provider: ProviderClient,
        rasterizer: Optional[ViewportRasterizer] = None,
        panel_host: Optional[PanelHost] = None,
    ) -> None:
        self._hub = hub
        self._provider = provider
        self._rasterizer = rasterizer
        self._panel_host = panel_host

    def install(self) -> Hub:
        """Register every hub-owned request kind; page kinds fall through to relay."""
        table = {
            RequestKind.CAPTURE_VIEWPORT: self.capture_viewport,
            RequestKind.GET_LLM_CONFIG: self.get_llm_config,
            RequestKind.SET_LLM_CONFIG: self.set_llm_config,
            RequestKind.RESET_AGENT: self.reset_agent,
            RequestKind.CHAT: self.chat,
            RequestKind.ANALYZE_PAGE: self.analyze_page,
            RequestKind.LOCATE_ELEMENTS: self.locate_elements,
            RequestKind.OPEN_SIDE_PANEL: self.open_side_panel,
            RequestKind.SIDE_PANEL_OPENED: self.side_panel_opened,
            RequestKind.CLOSE_SIDE_PANEL: self.close_side_panel,
            RequestKind.CHECK_SIDE_PANEL_STATE: self.check_side_panel_state,
            RequestKind.SIDE_PANEL_ASK: self.side_panel_ask,
        }
        for kind, handler in table.items():
            self._hub.register_handler(kind, handler)
        return self._hub

    # ------------------------------------------------------------------
    # Capture and config
    # ------------------------------------------------------------------

    async def capture_viewport(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        if self._rasterizer is None:
            raise CapabilityError("viewport capture is not available")
        screenshot = await self._rasterizer.capture(resolve_window_id(payload, sender))
        return ok(screenshot=screenshot)

    async def get_llm_config(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        return ok(config=self._provider.get_config())

    async def set_llm_config(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        kind = payload.get("model_type") or payload.get("modelType")
        if not kind:
            return fail("model_type is required")
        await self._provider.set_config(kind, payload.get("config") or {})
        return ok()

    async def reset_agent(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        # Re-read provider settings so a fresh conversation picks up saved changes.
        await self._provider.load()
        return ok()

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def chat(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        reply = await self._provider.complete(payload.get("messages") or [])
        return ok(response=reply.text, status_text=reply.status_text)

    async def analyze_page(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        """Answer a page question; with ``stream`` set, each delta is broadcast as ANSWER_DELTA."""
        window_id = resolve_window_id(payload, sender)
        streaming = bool(payload.get("stream"))
        logger.info("analyze page window=%s stream=%s", window_id, streaming)
        request_id = payload.get("request_id")

        async def broadcast_delta(delta: str) -> None:
            await self._hub.broadcast(
                EventKind.ANSWER_DELTA, {"delta": delta, "request_id": request_id}, window_id=window_id
            )

        reply = await tasks.analyze_page(
            self._provider,
            payload.get("screenshot"),
            payload.get("page_text") or "",
            payload.get("question"),
            on_delta=broadcast_delta if streaming else None,
        )
        return ok(response=reply.text, status_text=reply.status_text)

    async def locate_elements(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        # Location needs the screenshot itself; text-only input cannot answer it.
        flags = self._hub.feature_flags
        if flags is not None and not await flags.get():
            raise UnsupportedOperationError("screenshot input is disabled; element location is unavailable")
        elements = await tasks.locate_elements(
            self._provider,
            payload.get("screenshot"),
            payload.get("page_text") or "",
            payload.get("description") or "",
        )
        return ok(result={"elements": [element.model_dump() for element in elements]})

    # ------------------------------------------------------------------
    # Side panel
    # ------------------------------------------------------------------

    async def open_side_panel(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        """Purpose: Ask the host to open the panel, then record and announce the state.
        Inputs/Outputs: Payload may carry window_id (else sender window); returns result.
        Side Effects / State: Marks the window open and broadcasts the change.
        Dependencies: PanelHost.open, PanelStateRegistry, Hub.broadcast.
        Failure Modes: Gesture-gated opens raise CapabilityError(needs_user_gesture);
            unknown window returns a structured error.
        If Removed: The page entry point cannot open the panel.
        Testing Notes: Make the fake host raise the gesture message; expect the reason.
        """
        # State changes only after the host call succeeds.
        window_id = resolve_window_id(payload, sender)
        if window_id is None:
            return fail("window is unknown")
        if self._panel_host is None:
            raise CapabilityError("side panel is not available")
        try:
            await self._panel_host.open(window_id)
        except CapabilityError:
            raise
        except Exception as exc:
            if USER_GESTURE_RE.search(str(exc)):
                raise CapabilityError(str(exc), reason=NEEDS_USER_GESTURE) from exc
            raise
        await self._set_panel_state(window_id, True)
        return ok()

    async def side_panel_opened(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        window_id = resolve_window_id(payload, sender)
        if window_id is not None:
            await self._set_panel_state(window_id, True)
        return ok()

    async def close_side_panel(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        window_id = resolve_window_id(payload, sender)
        if window_id is not None:
            await self._set_panel_state(window_id, False)
        return ok()

    async def check_side_panel_state(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        return ok(is_open=self._hub.panel_state.is_open(resolve_window_id(payload, sender)))

    async def _set_panel_state(self, window_id: int, is_open: bool) -> None:
        if is_open:
            self._hub.panel_state.mark_open(window_id)
        else:
            self._hub.panel_state.mark_closed(window_id)
        logger.info("side panel window=%s is_open=%s", window_id, is_open)
        await self._hub.broadcast(EventKind.SIDE_PANEL_STATE_CHANGED, {"is_open": is_open}, window_id=window_id)

    async def side_panel_ask(self, payload: Dict[str, Any], sender: Optional[Sender]) -> Dict[str, Any]:
        """Park the question for a controller that is not listening yet, and forward it."""
        question = str(payload.get("question") or payload.get("text") or "")
        if not question:
            return fail("question is empty")
        pending = self._hub.put_pending_ask(question)
        await self._hub.broadcast(
            EventKind.SIDE_PANEL_ASK,
            {"question": pending.question, "ts": pending.ts, "_relay": True},
            window_id=resolve_window_id(payload, sender),
        )
        return ok()


def build_hub(
    provider: ProviderClient,
    feature_flags: Optional[FeatureFlagCache] = None,
    rasterizer: Optional[ViewportRasterizer] = None,
    panel_host: Optional[PanelHost] = None,
    hub: Optional[Hub] = None,
) -> Hub:
    """Create (or extend) a hub with the standard handlers installed."""
    if hub is None:
        hub = Hub(feature_flags=feature_flags)
    elif feature_flags is not None:
        hub.feature_flags = feature_flags
    return HubHandlers(hub, provider, rasterizer=rasterizer, panel_host=panel_host).install()

