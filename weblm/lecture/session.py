from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..models import LectureStep


class LectureState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TokenSource:
    """Monotonically increasing counter; bumping it invalidates every older token."""

    def __init__(self) -> None:
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def next(self) -> "CancellationToken":
        self._current += 1
        return CancellationToken(self, self._current)

    def invalidate(self) -> int:
        self._current += 1
        return self._current


@dataclass(frozen=True)
class CancellationToken:
    source: TokenSource = field(repr=False)
    value: int

    def is_valid(self) -> bool:
        return self.source.current == self.value


@dataclass
class LectureSession:
    """Narration state for one window, addressed by id and owned by the engine."""
    session_id: str
    window_id: int
    token: CancellationToken
    # Issued by the page agent; None when no page answered LECTURE_BEGIN.
    page_token: Optional[int] = None
    steps: List[LectureStep] = field(default_factory=list)
    current_index: int = 0
    # -1 means no anchor has been found yet in this session.
    last_anchor_offset: float = -1.0
    state: LectureState = LectureState.IDLE
    note: str = ""

    def record_anchor(self, offset: float) -> None:
        self.last_anchor_offset = max(self.last_anchor_offset, offset)
