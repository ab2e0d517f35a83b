"""Session controller: the conversation surface of one window.

Role:
    Registered with the hub as the ``controller`` context. Owns the
    conversation record (by id, in SessionStore), the input history, and the
    narration controls. Asks go hub -> provider; annotation and narration page
    work goes hub -> page agent.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from .errors import CapabilityError, GenerationError
from .hub.messages import EventKind, RequestKind, Sender, fail, ok
from .hub.router import ROLE_CONTROLLER, Hub
from .lecture.engine import LectureEngine
from .lecture.session import LectureState
from .models import StoredMessage
from .page.autoscroll import DEFAULT_SPEED
from .session_store import SessionStore
from .speech.voice import VoiceInput, VoiceService

logger = logging.getLogger("weblm.controller")

HISTORY_LIMIT = 10


class InputHistory:
    """Recent inputs, newest first, with up/down navigation and a scratch buffer."""

    def __init__(self, limit: int = HISTORY_LIMIT) -> None:
        self._limit = limit
        self._entries: List[str] = []
        self._index = -1
        self._scratch = ""

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def record(self, text: str) -> None:
        if not self._entries or self._entries[0] != text:
            self._entries.insert(0, text)
            del self._entries[self._limit :]
        self._index = -1
        self._scratch = ""

    def up(self, current: str = "") -> Optional[str]:
        if not self._entries:
            return None
        if self._index == -1:
            self._scratch = current
        self._index = min(len(self._entries) - 1, self._index + 1)
        return self._entries[self._index]

    def down(self) -> Optional[str]:
        if not self._entries or self._index == -1:
            return None
        self._index -= 1
        if self._index == -1:
            return self._scratch
        return self._entries[self._index]

    def clear(self) -> None:
        self._entries = []
        self._index = -1
        self._scratch = ""


class LiveSpeech:
    """Speaks a streamed answer sentence by sentence while it is still arriving."""

    def __init__(self, voice: VoiceService) -> None:
        self.request_id = uuid.uuid4().hex
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run(voice))

    def feed(self, delta: str) -> None:
        self._queue.put_nowait(delta)

    async def finish(self) -> int:
        """Mark the end of the answer and wait for the last sentence to be spoken."""
        self._queue.put_nowait(None)
        return await self._task

    async def _deltas(self) -> AsyncIterator[str]:
        while True:
            delta = await self._queue.get()
            if delta is None:
                return
            yield delta

    async def _run(self, voice: VoiceService) -> int:
        try:
            return await voice.speak_stream(self._deltas())
        except CapabilityError as exc:
            logger.warning("auto speak unavailable: %s", exc)
            return 0


class SessionController:
    """Hub context of role ``controller`` for one window."""

    role = ROLE_CONTROLLER

    def __init__(
        self,
        hub: Hub,
        window_id: int,
        store: SessionStore,
        engine: Optional[LectureEngine] = None,
        voice: Optional[VoiceService] = None,
        voice_input: Optional[VoiceInput] = None,
        context_id: Optional[str] = None,
        session_id: Optional[str] = None,
        chunk_limit: int = 180,
    ) -> None:
        """Purpose: Bind a controller to a window and a conversation record.
        Inputs/Outputs: Hub, window id, session store, optional engine/voice; no return.
        Side Effects / State: Creates (or reuses) the conversation record.
        Dependencies: SessionStore, LectureEngine, VoiceService, VoiceInput.
        Failure Modes: Store IO errors propagate from SessionStore.create.
        If Removed: Nothing asks questions or drives narration.
        Testing Notes: Pass a fake engine/voice to observe calls.
        """
        # The engine shares this context's sender so its requests resolve to our window.
        self.context_id = context_id or f"controller-{uuid.uuid4().hex[:8]}"
        self.window_id = window_id
        self._hub = hub
        self._sender = Sender(context_id=self.context_id, window_id=window_id)
        self._store = store
        self._voice = voice
        self._voice_input = voice_input
        self.engine = engine or LectureEngine(hub, self._sender, voice=voice, chunk_limit=chunk_limit)
        self.session_id = store.create(session_id)
        self.history = InputHistory()
        self._tasks: Set[asyncio.Task] = set()
        self._live: Dict[str, LiveSpeech] = {}
        self.auto_scrolling = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> Optional[Dict[str, Any]]:
        """Announce the panel, then answer a question parked before we listened."""
        self._hub.register_context(self)
        await self._hub.submit(RequestKind.SIDE_PANEL_OPENED, {"window_id": self.window_id}, self._sender)
        pending = self._hub.take_pending_ask()
        if pending is None:
            return None
        logger.info("consuming pending ask window=%s", self.window_id)
        return await self.ask(pending.question)

    async def shutdown(self) -> None:
        await self.engine.cancel()
        if self._voice_input is not None:
            self._voice_input.stop_listening()
        await self._hub.submit(RequestKind.CLOSE_SIDE_PANEL, {"window_id": self.window_id}, self._sender)
        self._hub.unregister_context(self.context_id)
        await self.wait_idle()

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def receive(self, event: str, payload: Dict[str, Any]) -> None:
        if event == EventKind.SIDE_PANEL_ASK.value:
            question = str(payload.get("question") or "")
            # Live delivery wins; drop the parked copy so startup does not repeat it.
            self._hub.take_pending_ask()
            if question:
                self._spawn(self.ask(question))
        elif event == EventKind.VOICE_RESULT.value:
            text = str(payload.get("text") or "").strip()
            if self._voice_input is not None:
                self._voice_input.stop_listening()
            if text:
                self._spawn(self.ask(text))
        elif event == EventKind.ANSWER_DELTA.value:
            speech = self._live.get(str(payload.get("request_id") or ""))
            if speech is not None:
                speech.feed(str(payload.get("delta") or ""))

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    async def send(self, text: str) -> Optional[Dict[str, Any]]:
        """Typed input: record it in the input history and ask."""
        text = (text or "").strip()
        if not text:
            return None
        self.history.record(text)
        return await self.ask(text)

    async def ask(self, question: str) -> Dict[str, Any]:
        """Purpose: Answer a question about the current page.
        Inputs/Outputs: Input is the question; returns ``{success, answer, status_text}``
            where a failure carries an inline error string as the answer.
        Side Effects / State: Appends user and assistant messages; marks the page.
        Dependencies: Hub CAPTURE_VIEWPORT, GET_PAGE_TEXT, ANALYZE_PAGE, HANDLE_ANNOTATIONS.
        Failure Modes: A capture failure means no screenshot, not an error; an
            analyze failure is recorded and returned inline.
        If Removed: The panel cannot answer questions.
        Testing Notes: Fail the capture and verify the analyze payload has no screenshot.
        """
        # Screenshot and page text are best effort; only the analyze call can fail the ask.
        question = question.strip()
        self._store.add_message(self.session_id, "user", question)

        screenshot = None
        captured = await self._hub.submit(RequestKind.CAPTURE_VIEWPORT, {"window_id": self.window_id}, self._sender)
        if captured.get("success"):
            screenshot = captured.get("screenshot")
        else:
            logger.info("viewport capture unavailable error=%s", captured.get("error"))

        page_text = ""
        page = await self._hub.submit(RequestKind.GET_PAGE_TEXT, {"window_id": self.window_id}, self._sender)
        if page.get("success"):
            page_text = str(page.get("text") or "")
        else:
            logger.warning("page text unavailable error=%s", page.get("error"))

        request = {"window_id": self.window_id, "screenshot": screenshot, "page_text": page_text, "question": question}
        # With auto speak on, the answer streams and is read aloud as it arrives.
        speech = await self._start_live_speech()
        if speech is not None:
            request.update(stream=True, request_id=speech.request_id)
        try:
            result = await self._hub.submit(RequestKind.ANALYZE_PAGE, request, self._sender)
        finally:
            if speech is not None:
                self._live.pop(speech.request_id, None)
                await speech.finish()
        if not result.get("success"):
            answer = f"Request failed: {result.get('error')}"
            self._store.add_message(self.session_id, "assistant", answer, meta={"error": True})
            return {"success": False, "answer": answer, "status_text": ""}

        answer = str(result.get("response") or "")
        status_text = str(result.get("status_text") or "")
        self._store.add_message(
            self.session_id,
            "assistant",
            answer,
            meta={"status_text": status_text} if status_text else None,
        )
        marked = await self._hub.submit(
            RequestKind.HANDLE_ANNOTATIONS,
            {"window_id": self.window_id, "text": answer},
            self._sender,
        )
        if not marked.get("success"):
            logger.warning("annotation relay failed error=%s", marked.get("error"))
        return {"success": True, "answer": answer, "status_text": status_text}

    async def new_conversation(self) -> Dict[str, Any]:
        self._store.reset(self.session_id)
        self.history.clear()
        return await self._hub.submit(RequestKind.RESET_AGENT, {"window_id": self.window_id}, self._sender)

    def messages(self) -> List[StoredMessage]:
        return self._store.get_messages(self.session_id)

    def history_up(self, current: str = "") -> Optional[str]:
        return self.history.up(current)

    def history_down(self) -> Optional[str]:
        return self.history.down()

    # ------------------------------------------------------------------
    # Narration
    # ------------------------------------------------------------------

    async def start_lecture(self) -> Dict[str, Any]:
        try:
            session = await self.engine.start()
        except GenerationError as exc:
            return fail(str(exc))
        if session.state == LectureState.IDLE:
            # Playback failed part way; the engine has already reset the page.
            return fail(session.note or "narration stopped")
        return ok(state=session.state.value, steps=len(session.steps), note=session.note)

    def pause_lecture(self) -> bool:
        return self.engine.pause()

    def resume_lecture(self) -> bool:
        return self.engine.resume()

    async def cancel_lecture(self) -> bool:
        return await self.engine.cancel()

    # ------------------------------------------------------------------
    # Auto scroll
    # ------------------------------------------------------------------

    async def toggle_auto_scroll(self, speed: str = DEFAULT_SPEED) -> Dict[str, Any]:
        """Start or stop the page's hands-free scroll; the flag flips only on success."""
        kind = RequestKind.STOP_AUTO_SCROLL if self.auto_scrolling else RequestKind.START_AUTO_SCROLL
        result = await self._hub.submit(kind, {"window_id": self.window_id, "speed": speed}, self._sender)
        if not result.get("success"):
            logger.warning("auto-scroll toggle failed error=%s", result.get("error"))
            return result
        self.auto_scrolling = not self.auto_scrolling
        return ok(auto_scrolling=self.auto_scrolling)

    # ------------------------------------------------------------------
    # Voice input
    # ------------------------------------------------------------------

    def toggle_voice_input(self) -> Dict[str, Any]:
        if self._voice_input is None:
            return fail("speech recognition is not available")
        try:
            return ok(listening=self._voice_input.toggle_listening())
        except CapabilityError as exc:
            return fail(exc.reason)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _start_live_speech(self) -> Optional[LiveSpeech]:
        if self._voice is None or not self._voice.available:
            return None
        if not await self._voice.auto_speak_enabled():
            return None
        speech = LiveSpeech(self._voice)
        self._live[speech.request_id] = speech
        return speech

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("controller task failed", exc_info=task.exception())
