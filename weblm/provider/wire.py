"""Wire formats for the two provider families.

Family A (OpenAI-compatible): bearer auth, ``/chat/completions``, reply text at
``choices[0].message.content``, stream of ``data: {json}`` lines ending with
``data: [DONE]``.

Family B (Anthropic Messages): ``x-api-key`` + ``anthropic-version`` headers,
``/messages``, reply text at ``content[0].text``, stream frames of type
``content_block_delta`` carrying ``delta.text``. Images travel inline as base64
with an explicit media type.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..config import ANTHROPIC_VERSION, FAMILY_B_KINDS
from ..errors import ProtocolError
from ..models import ChatMessage, ImagePart, ProviderConfig, TextPart

DATA_URL_RE = re.compile(r"^data:(?P<media>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)
DEFAULT_IMAGE_MEDIA_TYPE = "image/png"

STREAM_DONE = object()

Request = Tuple[str, Dict[str, str], Dict[str, Any]]


def _join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _parse_data_line(line: str) -> Optional[str]:
    # Only "data: ..." lines carry payloads; event:/id:/comments are skipped.
    line = line.strip()
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip()


class FamilyA:
    name = "family-a"

    def build_request(self, config: ProviderConfig, messages: Sequence[ChatMessage], stream: bool) -> Request:
        url = _join_url(config.base_url, "chat/completions")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config.api_key}",
        }
        body = {
            "model": config.model_id,
            "messages": to_family_a(messages),
            "max_tokens": config.max_tokens,
            "stream": stream,
        }
        return url, headers, body

    def parse_response(self, data: Any) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProtocolError(f"unexpected response shape: {exc!r}") from exc
        return content or ""

    def parse_frame(self, line: str) -> Union[str, object, None]:
        """Return delta text, STREAM_DONE, or None for lines without content."""
        data = _parse_data_line(line)
        if data is None or data == "":
            return None
        if data == "[DONE]":
            return STREAM_DONE
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"malformed stream frame: {data[:80]!r}") from exc
        try:
            choices = parsed.get("choices") or []
            if not choices:
                return None
            return (choices[0].get("delta") or {}).get("content") or None
        except AttributeError as exc:
            raise ProtocolError(f"unexpected frame shape: {data[:80]!r}") from exc


class FamilyB:
    name = "family-b"

    def build_request(self, config: ProviderConfig, messages: Sequence[ChatMessage], stream: bool) -> Request:
        url = _join_url(config.base_url, "messages")
        headers = {
            "Content-Type": "application/json",
            "x-api-key": config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        system, wire_messages = to_family_b(messages)
        body: Dict[str, Any] = {
            "model": config.model_id,
            "max_tokens": config.max_tokens,
            "messages": wire_messages,
            "stream": stream,
        }
        if system:
            body["system"] = system
        return url, headers, body

    def parse_response(self, data: Any) -> str:
        try:
            return data["content"][0]["text"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProtocolError(f"unexpected response shape: {exc!r}") from exc

    def parse_frame(self, line: str) -> Union[str, object, None]:
        data = _parse_data_line(line)
        if data is None or data == "":
            return None
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"malformed stream frame: {data[:80]!r}") from exc
        if not isinstance(parsed, dict):
            raise ProtocolError(f"unexpected frame shape: {data[:80]!r}")
        frame_type = parsed.get("type")
        if frame_type == "message_stop":
            return STREAM_DONE
        if frame_type != "content_block_delta":
            return None
        return (parsed.get("delta") or {}).get("text") or None


FAMILY_A = FamilyA()
FAMILY_B = FamilyB()


def family_for(provider_kind: str) -> Union[FamilyA, FamilyB]:
    return FAMILY_B if provider_kind in FAMILY_B_KINDS else FAMILY_A


# ----------------------------------------------------------------------
# Message translation
# ----------------------------------------------------------------------


def to_family_a(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
    """Family A uses the internal shape directly."""
    return [message.model_dump() for message in messages]


def from_family_a(wire_messages: Sequence[Dict[str, Any]]) -> List[ChatMessage]:
    return [ChatMessage.model_validate(message) for message in wire_messages]


def to_family_b(messages: Sequence[ChatMessage]) -> Tuple[str, List[Dict[str, Any]]]:
    """Purpose: Translate internal messages into the family B request shape.
    Inputs/Outputs: Input is a message sequence; output is (system text, wire messages).
    Side Effects / State: None; pure function.
    Dependencies: Uses _image_to_family_b for image parts.
    Failure Modes: None; unknown part types cannot occur after model validation.
    If Removed: Claude requests cannot be built.
    Testing Notes: Mixed text+image content keeps part order; system goes top-level.
    """
    # System turns move to the top-level field; other turns keep their order.
    system_texts: List[str] = []
    wire: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            system_texts.append(message.text())
            continue
        if isinstance(message.content, str):
            wire.append({"role": message.role, "content": message.content})
            continue
        parts: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            else:
                parts.append(_image_to_family_b(part))
        wire.append({"role": message.role, "content": parts})
    return "\n\n".join(system_texts), wire


def from_family_b(system: str, wire_messages: Sequence[Dict[str, Any]]) -> List[ChatMessage]:
    """Inverse of to_family_b."""
    messages: List[ChatMessage] = []
    if system:
        messages.append(ChatMessage(role="system", content=system))
    for message in wire_messages:
        content = message.get("content")
        if isinstance(content, str):
            messages.append(ChatMessage(role=message["role"], content=content))
            continue
        parts: List[Union[TextPart, ImagePart]] = []
        for part in content or []:
            if part.get("type") == "text":
                parts.append(TextPart(text=part.get("text", "")))
            elif part.get("type") == "image":
                parts.append(_image_from_family_b(part))
        messages.append(ChatMessage(role=message["role"], content=parts))
    return messages


def _image_to_family_b(part: ImagePart) -> Dict[str, Any]:
    url = part.image_url.url
    match = DATA_URL_RE.match(url)
    if match:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": match.group("media"), "data": match.group("data")},
        }
    if url.startswith("data:"):
        # Data URL without a recognizable media type: send the payload as PNG.
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": DEFAULT_IMAGE_MEDIA_TYPE,
                "data": url.split(",", 1)[-1],
            },
        }
    return {"type": "image", "source": {"type": "url", "url": url}}


def _image_from_family_b(part: Dict[str, Any]) -> ImagePart:
    source = part.get("source") or {}
    if source.get("type") == "base64":
        media = source.get("media_type") or DEFAULT_IMAGE_MEDIA_TYPE
        return ImagePart.from_url(f"data:{media};base64,{source.get('data', '')}")
    return ImagePart.from_url(source.get("url", ""))
