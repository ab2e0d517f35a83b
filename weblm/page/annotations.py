"""Visual marks drawn over the page: highlight boxes and underlines."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..models import ApproximatePosition
from .document import PageDocument, PageElement

logger = logging.getLogger("weblm.page")

MARK_HIGHLIGHT = "highlight"
MARK_UNDERLINE = "underline"

DEFAULT_COLOR = "#FF6B6B"
HIGHLIGHT_PADDING = 4.0
UNDERLINE_PADDING = 2.0
# Virtual viewport width used for percent-based positions.
VIEWPORT_WIDTH = 1280.0


@dataclass
class Rect:
    left: float
    top: float
    width: float
    height: float


@dataclass
class AnnotationMark:
    mark_id: int
    kind: str
    rect: Rect
    label: str = ""
    pulse: bool = False
    color: str = DEFAULT_COLOR
    element: Optional[PageElement] = field(default=None, repr=False)


class AnnotationLayer:
    """Overlay marks positioned in page coordinates."""

    def __init__(self, document: PageDocument) -> None:
        self._document = document
        self._marks: Dict[int, AnnotationMark] = {}
        self._ids = itertools.count(1)

    @property
    def marks(self) -> List[AnnotationMark]:
        return list(self._marks.values())

    def highlight_element(self, element: PageElement, label: str = "", pulse: bool = True) -> AnnotationMark:
        rect = Rect(
            left=-HIGHLIGHT_PADDING,
            top=element.top - HIGHLIGHT_PADDING,
            width=VIEWPORT_WIDTH + HIGHLIGHT_PADDING * 2,
            height=element.height + HIGHLIGHT_PADDING * 2,
        )
        return self._add(MARK_HIGHLIGHT, rect, label=label, pulse=pulse, element=element)

    def highlight_position(self, position: ApproximatePosition, label: str = "", pulse: bool = True) -> AnnotationMark:
        """Box centered on a percent position of the current viewport."""
        return self._add(MARK_HIGHLIGHT, self._position_rect(position), label=label, pulse=pulse)

    def underline_element(self, element: PageElement, label: str = "") -> AnnotationMark:
        rect = Rect(left=0.0, top=element.top + element.height + UNDERLINE_PADDING, width=VIEWPORT_WIDTH, height=0.0)
        return self._add(MARK_UNDERLINE, rect, label=label, element=element)

    def remove(self, mark: AnnotationMark) -> bool:
        return self._marks.pop(mark.mark_id, None) is not None

    def clear(self) -> int:
        count = len(self._marks)
        self._marks.clear()
        return count

    def _position_rect(self, position: ApproximatePosition) -> Rect:
        height = self._document.viewport_height
        x = position.x_percent / 100 * VIEWPORT_WIDTH
        y = position.y_percent / 100 * height
        width = position.width_percent / 100 * VIEWPORT_WIDTH
        box_height = position.height_percent / 100 * height
        # Viewport-relative input; store page coordinates.
        return Rect(
            left=x - width / 2,
            top=self._document.scroll_y + y - box_height / 2,
            width=width,
            height=box_height,
        )

    def _add(
        self,
        kind: str,
        rect: Rect,
        label: str = "",
        pulse: bool = False,
        element: Optional[PageElement] = None,
    ) -> AnnotationMark:
        mark = AnnotationMark(mark_id=next(self._ids), kind=kind, rect=rect, label=label, pulse=pulse, element=element)
        self._marks[mark.mark_id] = mark
        logger.debug("mark added kind=%s id=%s top=%.1f", kind, mark.mark_id, rect.top)
        return mark
