"""Hub/Router: the privileged context that owns shared state and dispatches messages.

Role:
    Every other context (page agent, controller) talks to the rest of the system
    only through ``Hub.submit`` (request/response) and ``Hub.broadcast``
    (fire-and-forget fan-out within a window). The hub never lets a handler
    exception escape: every result is ``{"success": bool, ...}``.

Delivery contract:
    - Best-effort. A relay to a context that is gone (unregistered) comes back
      as a structured error; nothing is queued or retried.
    - Broadcasts reach only contexts registered at the time of the call. Late
      joiners pull state with an explicit request (e.g. CHECK_SIDE_PANEL_STATE).
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from ..errors import CapabilityError
from .messages import PAGE_RELAY_KINDS, EventKind, RequestKind, Sender, fail, ok, resolve_window_id
from .state import FeatureFlagCache, PanelStateRegistry, PendingAskSlot

logger = logging.getLogger("weblm.hub")

Handler = Callable[[Dict[str, Any], Optional[Sender]], Awaitable[Dict[str, Any]]]

ROLE_PAGE = "page"
ROLE_CONTROLLER = "controller"


class HubContext(Protocol):
    """A registered execution context."""

    context_id: str
    window_id: int
    role: str

    async def receive(self, event: str, payload: Dict[str, Any]) -> None: ...


class RelayTarget(HubContext, Protocol):
    async def handle_request(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]: ...


class Hub:
    """Message dispatcher and owner of cross-context state."""

    def __init__(self, panel_state: Optional[PanelStateRegistry] = None,
                 feature_flags: Optional[FeatureFlagCache] = None) -> None:
        """Purpose: Create an empty hub with its cross-context state holders.
        Inputs/Outputs: Optional pre-built panel registry and feature flag cache.
        Side Effects / State: Initializes handler table, context registry, pending-ask slot.
        Dependencies: PanelStateRegistry, FeatureFlagCache, PendingAskSlot.
        Failure Modes: None at init.
        If Removed: Contexts have no way to reach each other.
        Testing Notes: Submit an unknown kind to a fresh hub; expect a structured error.
        """
        # Shared state lives here and is only mutated through hub operations.
        self.panel_state = panel_state or PanelStateRegistry()
        self.feature_flags = feature_flags
        self._pending_ask = PendingAskSlot()
        self._handlers: Dict[str, Handler] = {}
        self._contexts: Dict[str, HubContext] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_handler(self, kind: Union[RequestKind, str], handler: Handler) -> None:
        self._handlers[_kind_name(kind)] = handler

    def register_context(self, context: HubContext) -> None:
        logger.info(
            "context registered id=%s role=%s window=%s",
            context.context_id,
            context.role,
            context.window_id,
        )
        self._contexts[context.context_id] = context

    def unregister_context(self, context_id: str) -> None:
        if self._contexts.pop(context_id, None) is not None:
            logger.info("context unregistered id=%s", context_id)

    def contexts_in_window(self, window_id: Optional[int], role: Optional[str] = None) -> List[HubContext]:
        return [
            ctx
            for ctx in self._contexts.values()
            if (window_id is None or ctx.window_id == window_id) and (role is None or ctx.role == role)
        ]

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------

    async def submit(
        self,
        kind: Union[RequestKind, str],
        payload: Optional[Dict[str, Any]] = None,
        sender: Optional[Sender] = None,
    ) -> Dict[str, Any]:
        """Purpose: Dispatch one request and return a structured result.
        Inputs/Outputs: Inputs are request kind, payload dict, and sender; output is
            ``{"success": True, ...}`` or ``{"success": False, "error": str}``.
        Side Effects / State: Whatever the handler does; logs the outcome.
        Dependencies: Handler table, page relay for PAGE_RELAY_KINDS.
        Failure Modes: Unknown kinds and handler exceptions become structured errors;
            CapabilityError keeps its reason (e.g. needs_user_gesture) as the error.
        If Removed: No context can issue requests.
        Testing Notes: Unknown kind, raising handler, relay to missing page context.
        """
        # Relayed copies of our own broadcasts are acknowledged, never re-handled.
        payload = dict(payload or {})
        if payload.get("_relay") is True:
            return ok(relayed=True)

        name = _kind_name(kind)
        logger.debug("request kind=%s sender=%s", name, sender)
        try:
            if name in {k.value for k in PAGE_RELAY_KINDS} and name not in self._handlers:
                result = await self.relay_to_page(resolve_window_id(payload, sender), name, payload)
            else:
                handler = self._handlers.get(name)
                if handler is None:
                    logger.warning("unknown request kind=%s", name)
                    return fail(f"unknown request kind: {name}")
                result = await handler(payload, sender)
        except CapabilityError as exc:
            logger.warning("capability unavailable kind=%s reason=%s", name, exc.reason)
            return fail(exc.reason)
        except Exception as exc:
            logger.error("request failed kind=%s error=%s", name, exc, exc_info=True)
            return fail(str(exc) or type(exc).__name__)
        if not isinstance(result, dict) or "success" not in result:
            return ok(result=result)
        logger.debug("response kind=%s success=%s", name, result.get("success"))
        return result

    async def relay_to_page(self, window_id: Optional[int], kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Forward a request to the page context of a window; no retry if it is gone."""
        targets = self.contexts_in_window(window_id, role=ROLE_PAGE)
        if not targets:
            return fail(f"no page context for window {window_id}")
        target = targets[0]
        handle = getattr(target, "handle_request", None)
        if handle is None:
            return fail(f"context {target.context_id} does not accept requests")
        result = await handle(kind, payload)
        if not isinstance(result, dict) or "success" not in result:
            return ok(result=result)
        return result

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        event: Union[EventKind, str],
        payload: Optional[Dict[str, Any]] = None,
        window_id: Optional[int] = None,
    ) -> int:
        """Fan an event out to the live contexts of a window (all windows if None).

        Returns the number of contexts that accepted the event. Delivery failures
        are logged and skipped.
        """
        name = _kind_name(event)
        delivered = 0
        for ctx in self.contexts_in_window(window_id):
            try:
                await ctx.receive(name, dict(payload or {}))
                delivered += 1
            except Exception as exc:
                logger.warning("broadcast failed event=%s context=%s error=%s", name, ctx.context_id, exc)
        return delivered

    # ------------------------------------------------------------------
    # Pending ask
    # ------------------------------------------------------------------

    def put_pending_ask(self, question: str):
        return self._pending_ask.put(question)

    def take_pending_ask(self):
        return self._pending_ask.take()


def _kind_name(kind: Union[RequestKind, EventKind, str]) -> str:
    return kind.value if isinstance(kind, (RequestKind, EventKind)) else str(kind)
