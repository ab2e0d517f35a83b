from __future__ import annotations

from pathlib import Path
from typing import Dict

from .config import BASE_DIR

PROMPTS_DIR = BASE_DIR / "prompts"

_CACHE: Dict[Path, str] = {}


def load_prompt(name: str, prompts_dir: Path = PROMPTS_DIR) -> str:
    """Purpose: Load a named prompt template (``<name>.txt``) as UTF-8 text.
    Inputs/Outputs: Input is the template name and optional directory; output is text.
    Side Effects / State: Caches decoded templates per resolved path.
    Dependencies: Uses Path.read_text/read_bytes; used by provider tasks and narration.
    Failure Modes: Missing files raise FileNotFoundError; UnicodeDecodeError falls back
        to a tolerant decode that drops invalid bytes.
    If Removed: Analyze, locate, and lecture prompts cannot be built.
    Testing Notes: Validate BOM stripping and caching with a temp directory.
    """
    # Read once per path; strip BOM and fall back to a tolerant decode.
    path = (prompts_dir / f"{name}.txt").resolve()
    cached = _CACHE.get(path)
    if cached is not None:
        return cached
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        text = path.read_bytes().decode("utf-8", errors="ignore")
    text = text.lstrip("\ufeff").strip()
    _CACHE[path] = text
    return text


def render_prompt(name: str, prompts_dir: Path = PROMPTS_DIR, **values: object) -> str:
    """Load a template and substitute ``{placeholders}`` with str.format."""
    return load_prompt(name, prompts_dir).format(**values)
