"""Shared fakes and fixtures for the weblm test suite."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from weblm.hub.router import Hub
from weblm.hub.state import FeatureFlagCache
from weblm.page.agent import PageAgent
from weblm.page.document import PageDocument
from weblm.provider.client import ProviderClient
from weblm.settings_store import InMemorySettingsStore
from weblm.speech.host import RecognitionResult, Voice

SCREENSHOT = "data:image/png;base64,iVBORw0KGgo="

PAGE_HTML = """
<html>
  <head><title>Widget Guide</title><style>.x { color: red; }</style></head>
  <body>
    <nav aria-label="Main navigation"><a href="/">Home</a><a href="/docs">Docs</a></nav>
    <h1>Getting started with widgets</h1>
    <p>Widgets are small reusable parts of a page.</p>
    <div style="display: none"><p>Secret hidden text</p></div>
    <button title="Save your work">Save</button>
    <h2>Installation</h2>
    <p>Install the widget package before anything else.</p>
    <script>var tracking = "should not appear";</script>
    <h2>Configuration</h2>
    <p>Configuration lives in a single file.</p>
  </body>
</html>
"""


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

def openai_reply(content: str) -> Dict[str, Any]:
    return {"choices": [{"message": {"content": content}}]}


def sse_body(frames: List[Any], done: bool = True) -> bytes:
    lines = []
    for frame in frames:
        lines.append("data: " + (frame if isinstance(frame, str) else json.dumps(frame)))
        lines.append("")
    if done:
        lines.append("data: [DONE]")
        lines.append("")
    return "\n".join(lines).encode("utf-8")


class RecordingTransport:
    """MockTransport handler that replays responses and records every request."""

    def __init__(self, responses: List[httpx.Response]) -> None:
        self._responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self._responses) - 1)
        return self._responses[index]

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


def make_provider(
    handler: Callable[[httpx.Request], httpx.Response],
    store: InMemorySettingsStore,
    feature_flags: Optional[FeatureFlagCache] = None,
) -> ProviderClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ProviderClient(store, feature_flags=feature_flags, http_client=http)


def openai_store(**extra: Any) -> InMemorySettingsStore:
    values = {
        "modelType": "openai",
        "llmConfig": {"base_url": "https://api.example.com/v1", "model_id": "demo", "api_key": "k"},
    }
    values.update(extra)
    return InMemorySettingsStore(values)


# ---------------------------------------------------------------------------
# Host fakes
# ---------------------------------------------------------------------------

class FakeRasterizer:
    def __init__(self, screenshot: str = SCREENSHOT, error: Optional[Exception] = None) -> None:
        self.screenshot = screenshot
        self.error = error
        self.calls: List[Optional[int]] = []

    async def capture(self, window_id: Optional[int]) -> str:
        self.calls.append(window_id)
        if self.error is not None:
            raise self.error
        return self.screenshot


class FakePanelHost:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.opened: List[int] = []

    async def open(self, window_id: int) -> None:
        if self.error is not None:
            raise self.error
        self.opened.append(window_id)


class FakeSynthesizer:
    """Records utterances; can hold each utterance until released."""

    def __init__(self, voices: Optional[List[Voice]] = None, available: bool = True, hold: bool = False) -> None:
        self.available = available
        self.voices = list(voices or [])
        self.spoken: List[str] = []
        self.events: List[str] = []
        self.hold = hold
        self._release = asyncio.Event()
        self._voices_event = asyncio.Event()
        self.on_speak: Optional[Callable[[str], None]] = None

    async def speak(self, text: str, voice: Optional[Voice], rate: float, lang: str) -> None:
        self.spoken.append(text)
        if self.on_speak is not None:
            self.on_speak(text)
        if self.hold:
            await self._release.wait()
            self._release.clear()

    def release(self) -> None:
        self._release.set()

    def pause(self) -> None:
        self.events.append("pause")

    def resume(self) -> None:
        self.events.append("resume")

    def cancel(self) -> None:
        self.events.append("cancel")
        self._release.set()

    def list_voices(self) -> List[Voice]:
        return list(self.voices)

    async def voices_changed(self) -> None:
        await self._voices_event.wait()

    def report_voices(self, voices: List[Voice]) -> None:
        self.voices = list(voices)
        self._voices_event.set()


class FakeRecognizer:
    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.started = 0
        self.stopped = 0
        self.on_results = None
        self.on_end = None
        self.on_error = None

    def start(self, lang, on_results, on_end, on_error) -> None:
        self.started += 1
        self.on_results, self.on_end, self.on_error = on_results, on_end, on_error

    def stop(self) -> None:
        self.stopped += 1

    async def emit(self, *results: RecognitionResult) -> None:
        await self.on_results(list(results))


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def page_document() -> PageDocument:
    return PageDocument.from_html(PAGE_HTML, url="https://example.com/guide", viewport_height=200)


@pytest.fixture
def hub() -> Hub:
    return Hub()


@pytest.fixture
def page_agent(hub: Hub, page_document: PageDocument) -> PageAgent:
    agent = PageAgent(hub, page_document, window_id=1, context_id="page-1", scroll_duration=0)
    hub.register_context(agent)
    return agent
