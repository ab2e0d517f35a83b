from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class RequestKind(str, Enum):
    CAPTURE_VIEWPORT = "CAPTURE_VIEWPORT"
    GET_LLM_CONFIG = "GET_LLM_CONFIG"
    SET_LLM_CONFIG = "SET_LLM_CONFIG"
    RESET_AGENT = "RESET_AGENT"
    CHAT = "CHAT"
    ANALYZE_PAGE = "ANALYZE_PAGE"
    LOCATE_ELEMENTS = "LOCATE_ELEMENTS"
    OPEN_SIDE_PANEL = "OPEN_SIDE_PANEL"
    SIDE_PANEL_OPENED = "SIDE_PANEL_OPENED"
    CLOSE_SIDE_PANEL = "CLOSE_SIDE_PANEL"
    CHECK_SIDE_PANEL_STATE = "CHECK_SIDE_PANEL_STATE"
    SIDE_PANEL_ASK = "SIDE_PANEL_ASK"
    GET_PAGE_TEXT = "GET_PAGE_TEXT"
    HANDLE_ANNOTATIONS = "HANDLE_ANNOTATIONS"
    LECTURE_BEGIN = "LECTURE_BEGIN"
    LECTURE_PREPARE_STEP = "LECTURE_PREPARE_STEP"
    LECTURE_CLEAR = "LECTURE_CLEAR"
    START_AUTO_SCROLL = "START_AUTO_SCROLL"
    STOP_AUTO_SCROLL = "STOP_AUTO_SCROLL"


class EventKind(str, Enum):
    SIDE_PANEL_STATE_CHANGED = "SIDE_PANEL_STATE_CHANGED"
    SIDE_PANEL_ASK = "SIDE_PANEL_ASK"
    VOICE_RESULT = "VOICE_RESULT"
    ANSWER_DELTA = "ANSWER_DELTA"


# Kinds the hub forwards to the page context registered for the window.
PAGE_RELAY_KINDS = frozenset(
    {
        RequestKind.GET_PAGE_TEXT,
        RequestKind.HANDLE_ANNOTATIONS,
        RequestKind.LECTURE_BEGIN,
        RequestKind.LECTURE_PREPARE_STEP,
        RequestKind.LECTURE_CLEAR,
        RequestKind.START_AUTO_SCROLL,
        RequestKind.STOP_AUTO_SCROLL,
    }
)


@dataclass(frozen=True)
class Sender:
    """Origin of a request, as the host reports it."""
    context_id: Optional[str] = None
    window_id: Optional[int] = None


def ok(**payload: Any) -> Dict[str, Any]:
    return {"success": True, **payload}


def fail(error: str, **payload: Any) -> Dict[str, Any]:
    return {"success": False, "error": error, **payload}


def resolve_window_id(payload: Optional[Dict[str, Any]], sender: Optional[Sender]) -> Optional[int]:
    """Window from the payload first, then from the sender record."""
    if payload and payload.get("window_id") is not None:
        return int(payload["window_id"])
    if sender is not None and sender.window_id is not None:
        return sender.window_id
    return None
