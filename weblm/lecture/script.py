from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

from ..errors import GenerationError
from ..hub.messages import RequestKind, Sender
from ..hub.router import Hub
from ..models import ChatMessage, LectureStep
from ..prompt_loader import render_prompt
from ..utils import extract_array_block, split_sentences, strip_code_fence, truncate

logger = logging.getLogger("weblm.lecture")

MIN_STEPS = 8
MAX_STEPS = 12
CHUNK_LIMIT = 180
PAGE_TEXT_LIMIT = 5000


def build_script_messages(title: str, url: str, page_text: str) -> List[ChatMessage]:
    return [
        ChatMessage(role="system", content=render_prompt("lecture_system", min_steps=MIN_STEPS, max_steps=MAX_STEPS)),
        ChatMessage(
            role="user",
            content=render_prompt("lecture_user", title=title or "", url=url or "", page_text=page_text or ""),
        ),
    ]


def parse_script(text: str) -> List[LectureStep]:
    """Purpose: Turn a model reply into narration steps.
    Inputs/Outputs: Input is raw reply text; output is a non-empty list of LectureStep.
    Side Effects / State: None; pure function.
    Dependencies: strip_code_fence, extract_array_block, json.loads.
    Failure Modes: GenerationError when neither the strict parse nor the [...] span
        parse yields a list, or when no step carries narration text.
    If Removed: Narration cannot start.
    Testing Notes: Fenced array, prose-wrapped array, all-empty "say" values.
    """
    # Strict parse of the unfenced body first, then the outermost [...] span.
    body = strip_code_fence(text or "")
    data = _loads(body)
    if data is None:
        block = extract_array_block(body)
        data = _loads(block) if block else None
    if isinstance(data, dict) and isinstance(data.get("steps"), list):
        data = data["steps"]
    if not isinstance(data, list):
        raise GenerationError("narration script is not a JSON array")

    steps: List[LectureStep] = []
    for raw in data:
        if not isinstance(raw, dict):
            continue
        say = str(raw.get("say") or "").strip()
        if not say:
            continue
        steps.append(
            LectureStep(
                anchor_text=str(raw.get("description") or "").strip(),
                narration_text=say,
                fallback_scroll_percent=_percent(raw.get("scrollPercent")),
            )
        )
    if not steps:
        raise GenerationError("narration script has no narrated steps")
    return steps


def split_into_chunks(text: str, limit: int = CHUNK_LIMIT) -> List[str]:
    """Sentence-aware chunks no longer than ``limit``; long sentences are hard-wrapped."""
    chunks: List[str] = []
    current = ""
    for sentence in split_sentences(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        while len(sentence) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(sentence[:limit])
            sentence = sentence[limit:].strip()
        if not sentence:
            continue
        joined = f"{current} {sentence}" if current else sentence
        if len(joined) <= limit:
            current = joined
        else:
            chunks.append(current)
            current = sentence
    if current:
        chunks.append(current)
    return chunks


async def generate_script(
    hub: Hub,
    sender: Sender,
    page_text_limit: int = PAGE_TEXT_LIMIT,
) -> List[LectureStep]:
    """Fetch the page text and ask the model for a script, both through the hub."""
    page = await hub.submit(RequestKind.GET_PAGE_TEXT, {"window_id": sender.window_id}, sender)
    if not page.get("success"):
        raise GenerationError(f"page text unavailable: {page.get('error')}")
    messages = build_script_messages(
        str(page.get("title") or ""),
        str(page.get("url") or ""),
        truncate(str(page.get("text") or ""), page_text_limit),
    )
    reply = await hub.submit(
        RequestKind.CHAT,
        {"window_id": sender.window_id, "messages": [message.model_dump() for message in messages]},
        sender,
    )
    if not reply.get("success"):
        raise GenerationError(f"script generation failed: {reply.get('error')}")
    steps = parse_script(str(reply.get("response") or ""))
    logger.info("narration script generated steps=%d window=%s", len(steps), sender.window_id)
    return steps


def _loads(text: Optional[str]) -> Optional[Any]:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _percent(value: Any) -> float:
    try:
        percent = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(percent, 0.0), 100.0)
