from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from pydantic import ValidationError

from ..errors import ParseError, UnsupportedOperationError
from ..models import ChatMessage, ChatReply, ImagePart, LocatedElement, TextPart
from ..prompt_loader import render_prompt
from ..utils import safe_json_loads, truncate
from .client import ProviderClient

logger = logging.getLogger("weblm.provider")

DEFAULT_QUESTION = "Please explain the main content of this page."
LOCATE_TEXT_LIMIT = 1000

AnswerDeltaCallback = Callable[[str], Awaitable[None]]


def build_analyze_messages(screenshot: Optional[str], page_text: str, question: Optional[str]) -> List[ChatMessage]:
    """Explainer prompt; the image part is only present when a screenshot exists."""
    text = render_prompt("analyze_user", page_text=page_text or "", question=(question or "").strip() or DEFAULT_QUESTION)
    parts: list = []
    if screenshot and screenshot.strip():
        parts.append(ImagePart.from_url(screenshot))
    parts.append(TextPart(text=text))
    return [
        ChatMessage(role="system", content=render_prompt("analyze_system")),
        ChatMessage(role="user", content=parts),
    ]


async def analyze_page(
    client: ProviderClient,
    screenshot: Optional[str],
    page_text: str,
    question: Optional[str],
    on_delta: Optional[AnswerDeltaCallback] = None,
) -> ChatReply:
    """Answer a question about the page; streams through ``on_delta`` when given."""
    messages = build_analyze_messages(screenshot, page_text, question)
    if on_delta is None:
        return await client.complete(messages)
    reply = ChatReply()
    deltas = client.stream(messages, reply)
    try:
        async for delta in deltas:
            reply.text += delta
            await on_delta(delta)
    finally:
        await deltas.aclose()
    return reply


async def locate_elements(
    client: ProviderClient,
    screenshot: Optional[str],
    page_text: str,
    description: str,
) -> List[LocatedElement]:
    """Purpose: Ask the model where an element is on a screenshot.
    Inputs/Outputs: Inputs are screenshot data URL, page text, element description;
        output is a list of LocatedElement (possibly empty).
    Side Effects / State: One chat call.
    Dependencies: ProviderClient.chat, safe_json_loads.
    Failure Modes: UnsupportedOperationError without a screenshot (image input off);
        ParseError when neither the strict parse nor the {...} span parse succeeds.
    If Removed: Annotations fall back to text search only.
    Testing Notes: Reply with prose-wrapped JSON and with garbage.
    """
    # Location is meaningless without an image; refuse before calling the model.
    if not screenshot or not screenshot.strip():
        raise UnsupportedOperationError("screenshot input is disabled; element location is unavailable")
    messages = [
        ChatMessage(role="system", content=render_prompt("locate_system")),
        ChatMessage(
            role="user",
            content=[
                ImagePart.from_url(screenshot),
                TextPart(
                    text=render_prompt(
                        "locate_user",
                        page_text=truncate(page_text, LOCATE_TEXT_LIMIT),
                        description=description,
                    )
                ),
            ],
        ),
    ]
    reply = await client.chat(messages)
    return parse_located_elements(reply)


def parse_located_elements(reply: str) -> List[LocatedElement]:
    data = safe_json_loads(reply)
    if isinstance(data, list):
        data = {"elements": data}
    if not isinstance(data, dict):
        raise ParseError("could not parse element positions from model reply")
    elements = []
    for raw in data.get("elements") or []:
        if not isinstance(raw, dict):
            continue
        try:
            elements.append(LocatedElement.model_validate(raw))
        except ValidationError:
            logger.debug("skipping malformed located element: %r", raw)
    return elements
