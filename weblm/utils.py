import json
import re
from typing import Any, List, Optional, Tuple

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def normalize_text(text: str) -> str:
    """Purpose: Normalize free-form text for case-insensitive substring matching.
    Inputs/Outputs: Input is a raw string; output is lowercased with whitespace collapsed.
    Side Effects / State: None; pure function.
    Dependencies: Uses regex; called by the page agent's element and anchor search.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Anchor matching becomes sensitive to line breaks and case.
    Testing Notes: "Hello\n  World" and "hello world" should normalize equally.
    """
    # Lowercase and collapse runs of whitespace; keep non-ASCII page text intact.
    if not text:
        return ""
    return re.sub(r"\s+", " ", text.lower()).strip()


def strip_code_fence(text: str) -> str:
    """Remove a single surrounding ``` fence (with optional language tag)."""
    if not text:
        return ""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the first-brace to last-brace span from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads and locate parsing.
    Failure Modes: Returns None if braces are missing or inverted.
    If Removed: Loosely formatted model replies cannot be recovered.
    Testing Notes: Provide prose before/after a JSON object and ensure extraction.
    """
    # Locate the outermost JSON braces to extract a parseable block.
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def extract_array_block(text: str) -> Optional[str]:
    """Same as extract_json_block, for the first '[' to last ']' span."""
    if not text:
        return None
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Any]:
    """Purpose: Parse JSON from a model reply, strictly first, then by brace span.
    Inputs/Outputs: Input is raw text; output is the decoded value or None.
    Side Effects / State: None; pure function.
    Dependencies: Uses strip_code_fence, extract_json_block and json.loads.
    Failure Modes: Returns None on JSONDecodeError or missing JSON block.
    If Removed: Element-location replies wrapped in prose crash the caller.
    Testing Notes: Validate fenced, bare, and prose-wrapped objects.
    """
    # Strict parse of the (unfenced) body, then the extracted object span.
    body = strip_code_fence(text)
    try:
        return json.loads(body)
    except (json.JSONDecodeError, TypeError):
        pass
    block = extract_json_block(body)
    if not block:
        return None
    try:
        return json.loads(block)
    except json.JSONDecodeError:
        return None


def truncate(text: str, limit: int) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit]


# Full stops always end a sentence; ASCII ones only when followed by whitespace,
# so "3.5" and "e.g." inside a sentence never split it.
SENTENCE_END_RE = re.compile(r"(?<=[。！？；\n])|(?<=[.!?;])(?=\s)")


def split_sentences(text: str) -> List[str]:
    return [sentence.strip() for sentence in SENTENCE_END_RE.split(text or "") if sentence.strip()]


def complete_sentences(buffer: str) -> Tuple[List[str], str]:
    """Split a growing buffer into the sentences known to be complete and the rest.

    An ASCII full stop at the very end of the buffer is not yet known to end a
    sentence; it stays in the rest until the next character arrives.
    """
    cut = 0
    for match in SENTENCE_END_RE.finditer(buffer or ""):
        cut = match.end()
    return split_sentences(buffer[:cut]), buffer[cut:]
