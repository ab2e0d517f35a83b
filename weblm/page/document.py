"""Rendered page model for the page agent.

Role:
    Stands in for the host-rendered page: an element tree parsed from HTML with
    BeautifulSoup, a vertical block layout (every text node gets an offset and
    height), a scrollable viewport, a URL with a history object, and mutation
    observers. The page agent only reads and manipulates the page through this
    model.

Layout model:
    Text nodes stack top to bottom in document order. A text node's height is
    ``LINE_HEIGHT`` per wrapped line of ``CHARS_PER_LINE`` characters. Images
    and other replaced elements take ``REPLACED_HEIGHT``. Hidden nodes take no
    space. Layout is recomputed after every structural mutation.
"""

from __future__ import annotations

import itertools
import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

LINE_HEIGHT = 24.0
CHARS_PER_LINE = 80
REPLACED_HEIGHT = 200.0
DEFAULT_VIEWPORT_HEIGHT = 800.0

HIDDEN_TAGS = frozenset({"script", "style", "template", "noscript", "head", "title", "meta", "link"})
REPLACED_TAGS = frozenset({"img", "video", "canvas", "iframe", "svg"})
_STYLE_HIDDEN_RE = re.compile(r"(display\s*:\s*none|visibility\s*:\s*hidden)", re.IGNORECASE)

_ids = itertools.count(1)


@dataclass(eq=False)
class TextNode:
    text: str
    parent: "PageElement"
    top: float = 0.0
    height: float = 0.0

    @property
    def visible(self) -> bool:
        return self.parent.visible and bool(self.text.strip())


@dataclass(eq=False)
class PageElement:
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    children: List[object] = field(default_factory=list)
    parent: Optional["PageElement"] = None
    node_id: int = field(default_factory=lambda: next(_ids))
    top: float = 0.0
    height: float = 0.0

    @property
    def dom_id(self) -> Optional[str]:
        return self.attrs.get("id")

    @property
    def self_hidden(self) -> bool:
        if self.tag in HIDDEN_TAGS:
            return True
        if "hidden" in self.attrs:
            return True
        if self.attrs.get("aria-hidden", "").lower() == "true":
            return True
        return bool(_STYLE_HIDDEN_RE.search(self.attrs.get("style", "")))

    @property
    def visible(self) -> bool:
        node: Optional[PageElement] = self
        while node is not None:
            if node.self_hidden:
                return False
            node = node.parent
        return True

    def append(self, child: object) -> None:
        if isinstance(child, (PageElement, TextNode)):
            child.parent = self
        self.children.append(child)

    def iter_elements(self) -> Iterator["PageElement"]:
        yield self
        for child in self.children:
            if isinstance(child, PageElement):
                yield from child.iter_elements()

    def iter_text_nodes(self) -> Iterator[TextNode]:
        for child in self.children:
            if isinstance(child, TextNode):
                yield child
            elif isinstance(child, PageElement):
                yield from child.iter_text_nodes()

    def text_content(self) -> str:
        return " ".join(node.text.strip() for node in self.iter_text_nodes() if node.text.strip())

    def set_style(self, name: str, value: str) -> None:
        styles = _parse_style(self.attrs.get("style", ""))
        styles[name] = value
        self.attrs["style"] = "; ".join(f"{key}: {val}" for key, val in styles.items())

    def get_style(self, name: str) -> Optional[str]:
        return _parse_style(self.attrs.get("style", "")).get(name)


@dataclass
class PageInfo:
    scroll_y: float
    viewport_height: float
    scroll_height: float
    scroll_percent: float
    has_more_content: bool


@dataclass
class MutationRecord:
    added: List[PageElement] = field(default_factory=list)
    removed: List[PageElement] = field(default_factory=list)


MutationObserver = Callable[[MutationRecord], None]


class History:
    """The two standard history-mutation entry points; no event fires for them."""

    def __init__(self, document: "PageDocument") -> None:
        self._document = document
        self.entries: List[str] = [document.url]

    def push_state(self, url: str) -> None:
        self.entries.append(url)
        self._document.url = url

    def replace_state(self, url: str) -> None:
        self.entries[-1] = url
        self._document.url = url


class PageDocument:
    """Element tree plus viewport; see module docstring for the layout model."""

    def __init__(
        self,
        body: Optional[PageElement] = None,
        url: str = "about:blank",
        title: str = "",
        viewport_height: float = DEFAULT_VIEWPORT_HEIGHT,
    ) -> None:
        self.body = body or PageElement(tag="body")
        self.url = url
        self.title = title
        self.viewport_height = viewport_height
        self.scroll_y = 0.0
        self.scroll_height = viewport_height
        self.history = History(self)
        self._observers: List[MutationObserver] = []
        self.relayout()

    @classmethod
    def from_html(
        cls,
        html: str,
        url: str = "about:blank",
        viewport_height: float = DEFAULT_VIEWPORT_HEIGHT,
    ) -> "PageDocument":
        """Purpose: Build a page model from HTML text.
        Inputs/Outputs: Inputs are HTML, URL, and viewport height; returns PageDocument.
        Side Effects / State: None beyond the new object.
        Dependencies: BeautifulSoup (html.parser) and _convert.
        Failure Modes: Malformed HTML is repaired by the parser, never raised.
        If Removed: Pages cannot be loaded into the agent.
        Testing Notes: Hidden subtrees must be excluded from visible text.
        """
        # Parse, keep <title>, and convert <body> (or the whole tree) into PageElements.
        soup = BeautifulSoup(html or "", "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else ""
        root = soup.body or soup
        body = PageElement(tag="body", attrs=_attrs(root) if isinstance(root, Tag) and root.name == "body" else {})
        for child in root.children:
            converted = _convert(child)
            if converted is not None:
                body.append(converted)
        return cls(body=body, url=url, title=title, viewport_height=viewport_height)

    # ------------------------------------------------------------------
    # Layout and viewport
    # ------------------------------------------------------------------

    def relayout(self) -> None:
        """Recompute offsets and heights for every element and text node."""
        cursor = _layout(self.body, 0.0)
        self.scroll_height = max(cursor, self.viewport_height)
        self.scroll_y = min(self.scroll_y, self.max_scroll)

    @property
    def max_scroll(self) -> float:
        return max(0.0, self.scroll_height - self.viewport_height)

    def set_scroll(self, y: float) -> float:
        self.scroll_y = min(max(0.0, y), self.max_scroll)
        return self.scroll_y

    @property
    def viewport_center(self) -> float:
        return self.scroll_y + self.viewport_height / 2

    def page_info(self) -> PageInfo:
        max_scroll = self.max_scroll
        percent = (self.scroll_y / max_scroll * 100) if max_scroll > 0 else 0.0
        return PageInfo(
            scroll_y=self.scroll_y,
            viewport_height=self.viewport_height,
            scroll_height=self.scroll_height,
            scroll_percent=percent,
            has_more_content=self.scroll_y + self.viewport_height < self.scroll_height - 10,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def iter_elements(self) -> Iterator[PageElement]:
        return self.body.iter_elements()

    def iter_text_nodes(self) -> Iterator[TextNode]:
        return self.body.iter_text_nodes()

    def get_element_by_id(self, dom_id: str) -> Optional[PageElement]:
        for element in self.iter_elements():
            if element.dom_id == dom_id:
                return element
        return None

    def contains(self, element: PageElement) -> bool:
        node: Optional[PageElement] = element
        while node is not None:
            if node is self.body:
                return True
            node = node.parent
        return False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def observe(self, observer: MutationObserver) -> Callable[[], None]:
        """Register a structural-change observer; returns a disconnect function."""
        self._observers.append(observer)

        def disconnect() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return disconnect

    def append_child(self, element: PageElement, parent: Optional[PageElement] = None) -> PageElement:
        (parent or self.body).append(element)
        self.relayout()
        self._notify(MutationRecord(added=[element]))
        return element

    def remove(self, element: PageElement) -> None:
        parent = element.parent
        if parent is None or element not in parent.children:
            return
        parent.children.remove(element)
        element.parent = None
        self.relayout()
        self._notify(MutationRecord(removed=[element]))

    def replace_body(self, body: PageElement) -> None:
        """Swap the whole body, as client-side rendering frameworks do."""
        old = self.body
        self.body = body
        self.relayout()
        self._notify(MutationRecord(added=[body], removed=[old]))

    def _notify(self, record: MutationRecord) -> None:
        for observer in list(self._observers):
            observer(record)


def _layout(element: PageElement, cursor: float) -> float:
    start = cursor
    if not element.visible:
        element.top, element.height = cursor, 0.0
        for node in element.iter_text_nodes():
            node.top, node.height = cursor, 0.0
        for child in element.children:
            if isinstance(child, PageElement):
                _layout(child, cursor)
        return cursor
    if element.tag in REPLACED_TAGS:
        cursor += REPLACED_HEIGHT
    for child in element.children:
        if isinstance(child, TextNode):
            child.top = cursor
            text = child.text.strip()
            child.height = LINE_HEIGHT * math.ceil(len(text) / CHARS_PER_LINE) if text else 0.0
            cursor += child.height
        elif isinstance(child, PageElement):
            cursor = _layout(child, cursor)
    element.top, element.height = start, cursor - start
    return cursor


def _attrs(tag: Tag) -> Dict[str, str]:
    attrs: Dict[str, str] = {}
    for key, value in tag.attrs.items():
        attrs[key] = " ".join(value) if isinstance(value, list) else str(value)
    return attrs


def _convert(node: object) -> Optional[object]:
    if isinstance(node, Comment):
        return None
    if isinstance(node, NavigableString):
        text = str(node)
        return TextNode(text=text, parent=None) if text.strip() else None  # type: ignore[arg-type]
    if isinstance(node, Tag):
        element = PageElement(tag=node.name.lower(), attrs=_attrs(node))
        for child in node.children:
            converted = _convert(child)
            if converted is not None:
                element.append(converted)
        return element
    return None


def _parse_style(style: str) -> Dict[str, str]:
    styles: Dict[str, str] = {}
    for declaration in style.split(";"):
        if ":" not in declaration:
            continue
        key, value = declaration.split(":", 1)
        styles[key.strip().lower()] = value.strip()
    return styles
