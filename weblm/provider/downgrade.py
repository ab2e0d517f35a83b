"""Capability downgrade: detect "images not supported" rejections and strip images."""

from __future__ import annotations

import json
import re
from typing import Iterable, List, Sequence

from ..errors import NO_RESPONSE_STATUS
from ..models import ChatMessage

# Vendor phrasings seen for "this model does not take image input". The list is
# finite on purpose; wording outside it fails hard instead of retrying.
MULTIMODAL_UNSUPPORTED_SIGNATURES = (
    "multimodal",
    "multi-modal",
    "multi modal",
    "received multimodal",
    "received multi-modal",
    "does not support image",
    "not support image",
    "unsupported image",
    "vision is not enabled",
    "image input not supported",
)

AUTH_FAILURE_STATUS = 401

SCREENSHOT_DISABLED_NOTE = "ℹ️ Screenshot input is turned off; this answer uses page text only."
IMAGE_REJECTED_NOTE = (
    "⚠️ The current model does not accept image input; the screenshot was dropped and the request retried."
)
IMAGE_OMITTED_PLACEHOLDER = "(screenshot omitted)"


class MultimodalRejectionClassifier:
    """Decides whether a provider error means "drop the images and retry once"."""

    def __init__(self, signatures: Iterable[str] = MULTIMODAL_UNSUPPORTED_SIGNATURES) -> None:
        self._signatures = tuple(sig.lower() for sig in signatures)

    def matches(self, status: int, message: str) -> bool:
        """Purpose: Classify a provider error as a multimodal rejection.
        Inputs/Outputs: Inputs are HTTP status and error message; returns bool.
        Side Effects / State: None.
        Dependencies: Signature list given at construction.
        Failure Modes: Auth failures (401) and failures with no HTTP reply never match.
        If Removed: Text-only models fail every screenshot-bearing question.
        Testing Notes: Cover each signature, mixed case, extra whitespace, and 401.
        """
        # Case-insensitive substring match over whitespace-normalized text.
        if status in (AUTH_FAILURE_STATUS, NO_RESPONSE_STATUS):
            return False
        text = re.sub(r"\s+", " ", (message or "").lower())
        return any(signature in text for signature in self._signatures)


def extract_error_message(raw: str) -> str:
    """Best human-readable message from a provider error body."""
    raw = str(raw or "")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if not isinstance(parsed, dict):
        return raw
    error = parsed.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if parsed.get("message"):
        return str(parsed["message"])
    if error:
        return str(error)
    return raw


def has_image(messages: Sequence[ChatMessage]) -> bool:
    return any(message.has_image() for message in messages)


def strip_images(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
    """Drop image parts, joining the remaining text parts with newlines."""
    stripped: List[ChatMessage] = []
    for message in messages:
        if not message.has_image():
            stripped.append(message)
            continue
        text = message.text()
        stripped.append(ChatMessage(role=message.role, content=text or IMAGE_OMITTED_PLACEHOLDER))
    return stripped
