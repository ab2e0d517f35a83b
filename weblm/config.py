from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

BASE_DIR = Path(__file__).resolve().parent

PROVIDER_OPENAI = "openai"
PROVIDER_CLAUDE = "claude"
PROVIDER_QWEN = "qwen"
PROVIDER_DOUBAO = "doubao"
PROVIDER_GEMINI = "gemini"
PROVIDER_CUSTOM = "custom"

PROVIDER_KINDS = (
    PROVIDER_OPENAI,
    PROVIDER_CLAUDE,
    PROVIDER_QWEN,
    PROVIDER_DOUBAO,
    PROVIDER_GEMINI,
    PROVIDER_CUSTOM,
)

# Only Claude speaks the alternate wire family; everything else is OpenAI-compatible.
FAMILY_B_KINDS = frozenset({PROVIDER_CLAUDE})

DEFAULT_PROVIDER_CONFIGS: Dict[str, Dict[str, object]] = {
    PROVIDER_OPENAI: {
        "base_url": "https://api.openai.com/v1",
        "model_id": "gpt-4o",
        "max_tokens": 4096,
    },
    PROVIDER_CLAUDE: {
        "base_url": "https://api.anthropic.com/v1",
        "model_id": "claude-3-5-sonnet-20241022",
        "max_tokens": 4096,
    },
    PROVIDER_QWEN: {
        "base_url": "https://dashscope.aliyuncs.com/compatible-mode/v1",
        "model_id": "qwen-vl-max-latest",
        "max_tokens": 4096,
    },
    PROVIDER_DOUBAO: {
        # Doubao needs an inference endpoint id (ep-...) filled in by the user.
        "base_url": "https://ark.cn-beijing.volces.com/api/v3",
        "model_id": "",
        "max_tokens": 4096,
    },
    PROVIDER_GEMINI: {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model_id": "gemini-2.5-pro-preview-05-06",
        "max_tokens": 4096,
    },
    PROVIDER_CUSTOM: {
        "base_url": "",
        "model_id": "",
        "max_tokens": 4096,
    },
}

ANTHROPIC_VERSION = "2023-06-01"


@dataclass(frozen=True)
class Settings:
    """Runtime knobs for the hub, provider client, page agent, and narration."""
    data_dir: Path
    settings_path: Path
    sessions_path: Path
    prompts_dir: Path
    max_sessions: int
    feature_ttl: float
    panel_poll_interval: float
    voice_wait: float
    chunk_limit: int
    page_text_limit: int
    http_timeout: float
    log_level: str


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and resolves filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Non-numeric WEBLM_* numeric values raise ValueError.
    If Removed: The app and controller cannot be wired with consistent limits.
    Testing Notes: Verify defaults and overrides via monkeypatched environment.
    """
    # Resolve data paths first, then numeric limits.
    data_dir_env = os.getenv("WEBLM_DATA_DIR")
    data_dir = Path(data_dir_env) if data_dir_env else (BASE_DIR / "data").resolve()

    settings_path_env = os.getenv("WEBLM_SETTINGS_PATH")
    sessions_path_env = os.getenv("WEBLM_SESSIONS_PATH")

    return Settings(
        data_dir=data_dir,
        settings_path=Path(settings_path_env) if settings_path_env else data_dir / "settings.json",
        sessions_path=Path(sessions_path_env) if sessions_path_env else data_dir / "sessions.json",
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        max_sessions=int(os.getenv("WEBLM_MAX_SESSIONS", "20")),
        feature_ttl=float(os.getenv("WEBLM_FEATURE_TTL", "1.5")),
        panel_poll_interval=float(os.getenv("WEBLM_PANEL_POLL_INTERVAL", "2.0")),
        voice_wait=float(os.getenv("WEBLM_VOICE_WAIT", "1.0")),
        chunk_limit=int(os.getenv("WEBLM_CHUNK_LIMIT", "180")),
        page_text_limit=int(os.getenv("WEBLM_PAGE_TEXT_LIMIT", "5000")),
        http_timeout=float(os.getenv("WEBLM_HTTP_TIMEOUT", "120")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
