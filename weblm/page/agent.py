"""Page agent: the context that reads and manipulates one page.

Role:
    Registered with the hub as the ``page`` context of a window. The hub relays
    page text reads, annotation requests, narration steps and auto-scroll
    toggles to it, and broadcasts SIDE_PANEL_STATE_CHANGED to it. Everything it
    needs from elsewhere (viewport capture, element location by the model,
    panel opening) it asks of the hub.

Narration tokens:
    The page owns the narration token. LECTURE_BEGIN issues a fresh one and
    retires every earlier one, so two narrators driving the same page never
    both move it: steps and clears carrying a token other than the current one
    are answered stale and touch nothing.

Anchor selection:
    Narration steps name an anchor text. Matches are visible text nodes whose
    text contains the anchor (case-insensitive). The first match further down
    than ``last_anchor_offset`` wins, so repeated text never pulls the view
    backwards. Without a forward match, the match nearest the viewport center
    wins. Without any match, the view scrolls to the step's fallback percent.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from ..errors import CapabilityError, WebLMError
from ..hub.messages import EventKind, RequestKind, Sender, fail, ok
from ..hub.router import ROLE_PAGE, Hub
from ..models import ApproximatePosition, LocatedElement
from ..utils import normalize_text
from .annotations import AnnotationLayer, AnnotationMark
from .autoscroll import AutoScroller
from .document import PageDocument, PageElement, PageInfo, TextNode
from .overlay import OVERLAY_ATTR, LocationWatcher, OverlayGuard, PanelStatePoller

logger = logging.getLogger("weblm.page")

DEFAULT_TEXT_LIMIT = 5000
SCROLL_DURATION = 0.5
FRAME_INTERVAL = 1 / 60
SCROLL_OFFSET = 100.0
PAGE_OVERLAP = 100.0

ATTRIBUTE_PRIORITY = ("aria-label", "title")
TAG_PRIORITY = ("button", "a", "h1", "h2", "h3")
ANNOTATION_RE = re.compile(r"\[(?:标注|mark)\s*[:：]\s*([^\]]+)\]", re.IGNORECASE)

EXPLAIN_PAGE_QUESTION = "Please explain the main content of this page."
EXPLAIN_SELECTION_TEMPLATE = "Please explain this passage: {text}"

ScrollTarget = Union[PageElement, TextNode, int, float]


@dataclass
class AnchorMatch:
    offset: float
    height: float
    node: TextNode

    @property
    def element(self) -> PageElement:
        return self.node.parent


def ease_in_out_cubic(t: float) -> float:
    if t < 0.5:
        return 4 * t * t * t
    return 1 - (-2 * t + 2) ** 3 / 2


class PageAgent:
    """Hub context of role ``page`` bound to one document and window."""

    role = ROLE_PAGE

    def __init__(
        self,
        hub: Hub,
        document: PageDocument,
        window_id: int,
        context_id: Optional[str] = None,
        text_limit: int = DEFAULT_TEXT_LIMIT,
        scroll_duration: float = SCROLL_DURATION,
        frame_interval: float = FRAME_INTERVAL,
        panel_poll_interval: float = 2.0,
        overlay_check_interval: float = 1.0,
        location_poll_interval: float = 0.5,
    ) -> None:
        """Purpose: Bind an agent to a page document and a hub window.
        Inputs/Outputs: Hub, document, window id, and timing knobs; no return value.
        Side Effects / State: Builds the annotation layer and the three watchers.
        Dependencies: AnnotationLayer, OverlayGuard, LocationWatcher, PanelStatePoller.
        Failure Modes: None at init; call start() to register with the hub.
        If Removed: The hub has no page to relay page-work requests to.
        Testing Notes: Use scroll_duration=0 to make scrolling instantaneous.
        """
        # The agent talks to the rest of the system only through the hub.
        self.context_id = context_id or f"page-{uuid.uuid4().hex[:8]}"
        self.window_id = window_id
        self.document = document
        self._hub = hub
        self._sender = Sender(context_id=self.context_id, window_id=window_id)
        self._text_limit = text_limit
        self._scroll_duration = scroll_duration
        self._frame_interval = frame_interval
        self.annotations = AnnotationLayer(document)
        self.overlay = OverlayGuard(document, interval=overlay_check_interval)
        self.location = LocationWatcher(document, self._on_location_change, interval=location_poll_interval)
        self.panel_poller = PanelStatePoller(hub, self._sender, self._on_panel_state, interval=panel_poll_interval)
        self.auto_scroller = AutoScroller(document, interval=frame_interval)
        self._lecture_token = 0
        self._lecture_mark: Optional[AnnotationMark] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._hub.register_context(self)
        await self.overlay.start()
        await self.location.start()
        await self.panel_poller.start()
        logger.info("page agent started window=%s url=%s", self.window_id, self.document.url)

    async def stop(self) -> None:
        await self.auto_scroller.stop()
        await self.panel_poller.stop()
        await self.location.stop()
        await self.overlay.stop()
        self._hub.unregister_context(self.context_id)

    # ------------------------------------------------------------------
    # Hub surface
    # ------------------------------------------------------------------

    async def handle_request(self, kind: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if kind == RequestKind.GET_PAGE_TEXT.value:
            return ok(text=self.extract_visible_text(), title=self.document.title, url=self.document.url)
        if kind == RequestKind.HANDLE_ANNOTATIONS.value:
            return ok(marked=await self.handle_annotations(str(payload.get("text") or "")))
        if kind == RequestKind.LECTURE_BEGIN.value:
            return ok(token=self.begin_lecture())
        if kind == RequestKind.LECTURE_PREPARE_STEP.value:
            return await self.prepare_lecture_step(payload)
        if kind == RequestKind.LECTURE_CLEAR.value:
            return ok(cleared=self.clear_lecture_mark(payload.get("token"), end=bool(payload.get("end"))))
        if kind == RequestKind.START_AUTO_SCROLL.value:
            await self.start_auto_scroll(payload.get("speed"))
            return ok(speed=self.auto_scroller.speed)
        if kind == RequestKind.STOP_AUTO_SCROLL.value:
            await self.stop_auto_scroll()
            return ok()
        return fail(f"page cannot handle {kind}")

    async def receive(self, event: str, payload: Dict[str, Any]) -> None:
        if event == EventKind.SIDE_PANEL_STATE_CHANGED.value:
            self._on_panel_state(bool(payload.get("is_open")))

    # ------------------------------------------------------------------
    # Reading the page
    # ------------------------------------------------------------------

    def extract_visible_text(self, limit: Optional[int] = None) -> str:
        """Visible text nodes, trimmed and newline-joined, cut to the limit."""
        limit = self._text_limit if limit is None else limit
        lines = [node.text.strip() for node in self._visible_text_nodes()]
        return "\n".join(lines)[:limit]

    def locate_element(self, description: str) -> Optional[PageElement]:
        """Purpose: Find the element a free-form description refers to.
        Inputs/Outputs: Input is a description; returns a PageElement or None.
        Side Effects / State: None.
        Dependencies: normalize_text; ATTRIBUTE_PRIORITY, TAG_PRIORITY.
        Failure Modes: Returns None when no strategy matches.
        If Removed: Every annotation marker needs a model round trip.
        Testing Notes: aria-label beats a heading with the same text.
        """
        # Attributes first, then tag text, then a full text-node scan.
        needle = normalize_text(description)
        if not needle:
            return None
        elements = [el for el in self.document.iter_elements() if el.visible and not _is_overlay(el)]
        for attr in ATTRIBUTE_PRIORITY:
            for element in elements:
                if needle in normalize_text(element.attrs.get(attr, "")):
                    return element
        for tag in TAG_PRIORITY:
            for element in elements:
                if element.tag == tag and needle in normalize_text(element.text_content()):
                    return element
        for node in self._visible_text_nodes():
            if needle in normalize_text(node.text):
                return node.parent
        return None

    async def locate_via_model(self, description: str) -> List[LocatedElement]:
        """Ask the model (through the hub) and box every element it reports."""
        captured = await self._hub.submit(RequestKind.CAPTURE_VIEWPORT, {"window_id": self.window_id}, self._sender)
        if not captured.get("success"):
            raise CapabilityError(f"viewport capture failed: {captured.get('error')}")
        result = await self._hub.submit(
            RequestKind.LOCATE_ELEMENTS,
            {
                "window_id": self.window_id,
                "screenshot": captured.get("screenshot"),
                "page_text": self.extract_visible_text(),
                "description": description,
            },
            self._sender,
        )
        if not result.get("success"):
            raise WebLMError(result.get("error") or "element location failed")
        located = [LocatedElement.model_validate(raw) for raw in (result.get("result") or {}).get("elements") or []]
        for element in located:
            self.highlight_position(element.approximate_position, label=element.description or description)
        return located

    def find_anchor_matches(self, anchor_text: str) -> List[AnchorMatch]:
        needle = normalize_text(anchor_text)
        if not needle:
            return []
        return [
            AnchorMatch(offset=node.top, height=node.height, node=node)
            for node in self._visible_text_nodes()
            if needle in normalize_text(node.text)
        ]

    def select_anchor(self, matches: List[AnchorMatch], last_anchor_offset: float) -> Optional[AnchorMatch]:
        if not matches:
            return None
        for match in matches:
            if match.offset > last_anchor_offset:
                return match
        center = self.document.viewport_center
        return min(matches, key=lambda match: abs(match.offset + match.height / 2 - center))

    # ------------------------------------------------------------------
    # Marks
    # ------------------------------------------------------------------

    def highlight(self, element: PageElement, label: Optional[str] = None, pulse: bool = False) -> AnnotationMark:
        return self.annotations.highlight_element(element, label=label or "", pulse=pulse)

    def underline(self, element: PageElement) -> AnnotationMark:
        return self.annotations.underline_element(element)

    def highlight_position(self, position: ApproximatePosition, label: str = "") -> AnnotationMark:
        return self.annotations.highlight_position(position, label=label)

    def clear_marks(self) -> int:
        self._lecture_mark = None
        return self.annotations.clear()

    async def handle_annotations(self, text: str) -> int:
        """Purpose: Mark every ``[mark: desc]`` / ``[标注: desc]`` named in a reply.
        Inputs/Outputs: Input is assistant reply text; returns the number of marks drawn.
        Side Effects / State: Adds highlight marks; may call the model through the hub.
        Dependencies: locate_element, then locate_via_model as the fallback.
        Failure Modes: A marker that fails is logged and skipped.
        If Removed: Answers cannot point at page elements.
        Testing Notes: One marker resolvable locally, one needing the model, one failing.
        """
        # Local lookup first; the model is only asked when the page has no match.
        marked = 0
        for match in ANNOTATION_RE.finditer(text or ""):
            description = match.group(1).strip()
            if not description:
                continue
            try:
                element = self.locate_element(description)
                if element is not None:
                    self.highlight(element, label=description, pulse=True)
                    marked += 1
                    continue
                marked += len(await self.locate_via_model(description))
            except Exception as exc:
                logger.warning("annotation failed description=%r error=%s", description, exc)
        return marked

    # ------------------------------------------------------------------
    # Scrolling
    # ------------------------------------------------------------------

    async def scroll_to(self, target: ScrollTarget, smooth: bool = True, block: str = "center") -> PageInfo:
        """Scroll to an element/text node, or to a percent of the scrollable extent."""
        destination = self._document_position(target, block)
        if not smooth or self._scroll_duration <= 0:
            self.document.set_scroll(destination)
            return self.document.page_info()
        start = self.document.scroll_y
        distance = min(max(0.0, destination), self.document.max_scroll) - start
        frames = max(1, int(round(self._scroll_duration / self._frame_interval)))
        for frame in range(1, frames + 1):
            self.document.set_scroll(start + distance * ease_in_out_cubic(frame / frames))
            await asyncio.sleep(self._frame_interval)
        return self.document.page_info()

    async def scroll_page(self, direction: str = "down", overlap: float = PAGE_OVERLAP) -> PageInfo:
        amount = self.document.viewport_height - overlap
        delta = amount if direction == "down" else -amount
        return await self.scroll_to_offset(self.document.scroll_y + delta)

    async def scroll_to_offset(self, y: float) -> PageInfo:
        return await self.scroll_to(_Offset(y))

    async def start_auto_scroll(self, speed: Optional[str] = None) -> None:
        await self.auto_scroller.start(speed)

    async def stop_auto_scroll(self) -> None:
        if self.auto_scroller.running:
            logger.info("auto-scroll stopped at=%.0f", self.document.scroll_y)
        await self.auto_scroller.stop()

    def _document_position(self, target: Any, block: str) -> float:
        if isinstance(target, _Offset):
            return target.y
        if isinstance(target, (int, float)):
            percent = min(max(float(target), 0.0), 100.0)
            return percent / 100 * self.document.max_scroll
        top, height = target.top, target.height
        viewport = self.document.viewport_height
        if block == "center":
            return top - viewport / 2 + height / 2
        if block == "end":
            return top + height - viewport + SCROLL_OFFSET
        return top - SCROLL_OFFSET

    # ------------------------------------------------------------------
    # Narration support
    # ------------------------------------------------------------------

    def begin_lecture(self) -> int:
        """Issue a new narration token; every earlier token goes stale."""
        self._lecture_token += 1
        self.clear_lecture_mark()
        logger.info("lecture begun window=%s token=%s", self.window_id, self._lecture_token)
        return self._lecture_token

    def _is_stale(self, token: Optional[Any]) -> bool:
        # No token means a caller that never asked for one; it is not fenced.
        return token is not None and int(token) != self._lecture_token

    async def prepare_lecture_step(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Purpose: Do the page half of one narration step.
        Inputs/Outputs: Payload has anchor_text, fallback_scroll_percent,
            last_anchor_offset and token; returns ``{found, offset}``.
        Side Effects / State: Clears the previous lecture mark, scrolls, underlines.
        Dependencies: find_anchor_matches, select_anchor, scroll_to.
        Failure Modes: A token other than the one begin_lecture issued last is
            a no-op answered with stale=True.
        If Removed: Narration cannot move the view or mark what it talks about.
        Testing Notes: Duplicate anchor text must move forward, never back.
        """
        # Steps from a superseded narration must not touch the page.
        token = payload.get("token")
        if self._is_stale(token):
            return ok(found=False, offset=None, stale=True)
        self.clear_lecture_mark(token)

        anchor_text = str(payload.get("anchor_text") or "")
        last_offset = float(payload.get("last_anchor_offset", -1.0))
        fallback = float(payload.get("fallback_scroll_percent") or 0.0)

        chosen = self.select_anchor(self.find_anchor_matches(anchor_text), last_offset)
        if chosen is None:
            logger.info("anchor miss anchor=%r fallback_percent=%.1f", anchor_text, fallback)
            await self.scroll_to(fallback)
            return ok(found=False, offset=None)

        await self.scroll_to(chosen.node)
        if self._is_stale(token):
            return ok(found=False, offset=None, stale=True)

        # Layout may have shifted while scrolling; resolve again near the chosen spot.
        rematches = self.find_anchor_matches(anchor_text)
        if not rematches:
            return ok(found=True, offset=chosen.offset)
        resolved = min(rematches, key=lambda match: abs(match.offset - chosen.offset))
        self._lecture_mark = self.underline(resolved.element)
        return ok(found=True, offset=resolved.offset)

    def clear_lecture_mark(self, token: Optional[Any] = None, end: bool = False) -> bool:
        """Remove the lecture underline; ``end`` also retires the caller's token."""
        if self._is_stale(token):
            return False
        if end and token is not None:
            self._lecture_token += 1
        if self._lecture_mark is None:
            return False
        self.annotations.remove(self._lecture_mark)
        self._lecture_mark = None
        return True

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def open_panel(self) -> Dict[str, Any]:
        """Floating-button click: the button hides only once the panel is open."""
        result = await self._hub.submit(RequestKind.OPEN_SIDE_PANEL, {"window_id": self.window_id}, self._sender)
        if result.get("success"):
            self.overlay.set_visible(False)
        return result

    async def explain_page(self) -> Dict[str, Any]:
        return await self._ask_panel(EXPLAIN_PAGE_QUESTION)

    async def explain_selection(self, selection: str) -> Dict[str, Any]:
        return await self._ask_panel(EXPLAIN_SELECTION_TEMPLATE.format(text=selection))

    async def _ask_panel(self, question: str) -> Dict[str, Any]:
        opened = await self.open_panel()
        if not opened.get("success"):
            logger.info("panel open failed before ask error=%s", opened.get("error"))
        return await self._hub.submit(
            RequestKind.SIDE_PANEL_ASK,
            {"window_id": self.window_id, "question": question},
            self._sender,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _visible_text_nodes(self) -> List[TextNode]:
        return [node for node in self.document.iter_text_nodes() if node.visible and not _is_overlay(node.parent)]

    def _on_panel_state(self, is_open: bool) -> None:
        self.overlay.set_visible(not is_open)

    def _on_location_change(self, url: str) -> None:
        # Marks point into the old view; the entry point may have been wiped.
        self.clear_marks()
        self.overlay.ensure()
        logger.info("ui revalidated window=%s url=%s", self.window_id, url)


@dataclass
class _Offset:
    y: float


def _is_overlay(element: Optional[PageElement]) -> bool:
    node = element
    while node is not None:
        if OVERLAY_ATTR in node.attrs:
            return True
        node = node.parent
    return False
