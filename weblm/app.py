from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

from .config import Settings, load_settings
from .hub.handlers import PanelHost, ViewportRasterizer, build_hub
from .hub.messages import RequestKind, Sender
from .hub.router import Hub
from .hub.state import FeatureFlagCache
from .models import HubRequestBody
from .provider.client import ProviderClient
from .session_store import SessionStore
from .settings_store import JsonFileSettingsStore, SettingsStore

BASE_DIR = Path(__file__).resolve().parent

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("weblm").setLevel(log_level)
logger = logging.getLogger("weblm.app")


def create_app(
    settings: Optional[Settings] = None,
    settings_store: Optional[SettingsStore] = None,
    provider: Optional[ProviderClient] = None,
    session_store: Optional[SessionStore] = None,
    rasterizer: Optional[ViewportRasterizer] = None,
    panel_host: Optional[PanelHost] = None,
) -> FastAPI:
    """Purpose: Wire the hub, provider client, and stores behind an HTTP surface.
    Inputs/Outputs: Optional pre-built collaborators; returns a FastAPI app.
    Side Effects / State: Creates the data directory; loads provider config on startup.
    Dependencies: load_settings, JsonFileSettingsStore, FeatureFlagCache,
        ProviderClient, build_hub, SessionStore.
    Failure Modes: Invalid numeric settings raise ValueError at creation.
    If Removed: Out-of-process contexts cannot reach the hub.
    Testing Notes: Inject a ProviderClient over httpx.MockTransport and use TestClient.
    """
    # Collaborators default to file-backed stores under the data directory.
    settings = settings or load_settings()
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    store = settings_store or JsonFileSettingsStore(settings.settings_path)
    feature_flags = FeatureFlagCache(store, ttl=settings.feature_ttl)
    provider = provider or ProviderClient(store, feature_flags=feature_flags, timeout=settings.http_timeout)
    sessions = session_store or SessionStore(settings.sessions_path, max_sessions=settings.max_sessions)
    hub: Hub = build_hub(provider, feature_flags=feature_flags, rasterizer=rasterizer, panel_host=panel_host)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await provider.load()
        yield
        await provider.aclose()

    app = FastAPI(title="WebLM Page Narrator", lifespan=lifespan)
    app.state.hub = hub
    app.state.provider = provider
    app.state.session_store = sessions

    @app.post("/api/hub/{kind}")
    async def submit(kind: str, body: HubRequestBody) -> Dict[str, Any]:
        """Purpose: Forward one request to the hub on behalf of a remote context.
        Inputs/Outputs: Path kind plus {payload, window_id, context_id}; returns the
            hub's structured result.
        Side Effects / State: Whatever the handler does.
        Dependencies: Hub.submit.
        Failure Modes: Unknown kinds come back as {success: false, error}; never 500.
        If Removed: Remote contexts cannot issue requests.
        Testing Notes: Post GET_LLM_CONFIG and an unknown kind.
        """
        # The sender record is built from the envelope, as the host would report it.
        sender = Sender(context_id=body.context_id, window_id=body.window_id)
        return await hub.submit(kind, body.payload, sender)

    @app.get("/api/sessions")
    def list_sessions() -> List[dict]:
        return [summary.model_dump() for summary in sessions.list_sessions()]

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str) -> dict:
        messages = sessions.get_messages(session_id)
        return {
            "session_id": session_id,
            "messages": [message.model_dump() for message in messages],
        }

    @app.get("/api/panel/{window_id}")
    async def panel_state(window_id: int) -> Dict[str, Any]:
        if window_id < 0:
            raise HTTPException(status_code=400, detail="window_id must be non-negative")
        return await hub.submit(RequestKind.CHECK_SIDE_PANEL_STATE, {"window_id": window_id})

    logger.info("app ready data_dir=%s", settings.data_dir)
    return app


app = create_app()
