"""Narration engine: generate a script, then walk the page step by step.

Role:
    Driven by the session controller. Talks to the page only through the hub
    (LECTURE_BEGIN, LECTURE_PREPARE_STEP, LECTURE_CLEAR) and to the model
    through the hub (GET_PAGE_TEXT, CHAT). Speech goes through the VoiceService.

States:
    IDLE -> GENERATING -> PLAYING <-> PAUSED -> COMPLETED | CANCELLED.
    A generation or playback failure returns to IDLE with a note. Starting
    again bumps the local token, so every continuation of an older session
    becomes a silent no-op.

Tokens:
    The local token fences this engine's own coroutines. The page token,
    issued by the page on LECTURE_BEGIN, fences the page itself: when another
    narrator begins on the same page, this engine's next step is answered
    stale and the session ends CANCELLED.

Per step:
    (1) the page clears the previous mark, (2) selects the anchor with forward
    bias, (3) scrolls to it or to the fallback percent, (4) re-resolves and
    underlines; then (5) narration plays chunk by chunk and (6) the mark is
    cleared and the index advances. A failed page relay is logged and the step
    still narrates.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Optional

from ..errors import GenerationError
from ..hub.messages import RequestKind, Sender
from ..hub.router import Hub
from ..models import LectureStep
from ..speech.voice import VoiceService
from ..step_runner import RunnerStep, StepRunner
from .script import CHUNK_LIMIT, PAGE_TEXT_LIMIT, generate_script, split_into_chunks
from .session import LectureSession, LectureState, TokenSource

logger = logging.getLogger("weblm.lecture")

SPEECH_UNAVAILABLE_NOTE = "Speech is unavailable; the narration script was generated only."

StepCallback = Callable[[int, LectureStep], None]
StateCallback = Callable[[LectureState], None]


class LectureEngine:
    """Per-window narration singleton."""

    def __init__(
        self,
        hub: Hub,
        sender: Sender,
        voice: Optional[VoiceService] = None,
        chunk_limit: int = CHUNK_LIMIT,
        page_text_limit: int = PAGE_TEXT_LIMIT,
        on_step: Optional[StepCallback] = None,
        on_state: Optional[StateCallback] = None,
    ) -> None:
        self._hub = hub
        self._sender = sender
        self._voice = voice
        self._chunk_limit = chunk_limit
        self._page_text_limit = page_text_limit
        self._tokens = TokenSource()
        self._session: Optional[LectureSession] = None
        self._resumed = asyncio.Event()
        self._resumed.set()
        self.on_step = on_step
        self.on_state = on_state

    @property
    def session(self) -> Optional[LectureSession]:
        return self._session

    @property
    def state(self) -> LectureState:
        return self._session.state if self._session else LectureState.IDLE

    @property
    def current_index(self) -> int:
        return self._session.current_index if self._session else 0

    async def start(self) -> LectureSession:
        """Purpose: Begin a new narration session, superseding any running one.
        Inputs/Outputs: No inputs; returns the session once it ends or is superseded.
        Side Effects / State: Bumps the token, stops speech, walks the page.
        Dependencies: generate_script, StepRunner, VoiceService, the hub.
        Failure Modes: GenerationError after resetting the session to IDLE.
            Missing speech completes with SPEECH_UNAVAILABLE_NOTE and no steps run.
            Any other failure during playback resets to IDLE with a note instead
            of raising.
        If Removed: The page cannot be narrated.
        Testing Notes: Start twice; the first session must not run further steps.
        """
        # The new token makes every continuation of the previous session stale.
        token = self._tokens.next()
        if self._voice is not None:
            self._voice.cancel()
        self._resumed.set()
        session = LectureSession(session_id=uuid.uuid4().hex, window_id=self._sender.window_id, token=token)
        self._session = session
        self._set_state(session, LectureState.GENERATING)
        session.page_token = await self._begin_on_page()
        if not token.is_valid():
            return session

        try:
            steps = await generate_script(self._hub, self._sender, self._page_text_limit)
        except GenerationError as exc:
            if token.is_valid():
                session.note = str(exc)
                self._set_state(session, LectureState.IDLE)
            logger.warning("narration generation failed window=%s error=%s", session.window_id, exc)
            raise
        if not token.is_valid():
            return session
        session.steps = steps

        if self._voice is None or not self._voice.available:
            session.note = SPEECH_UNAVAILABLE_NOTE
            logger.warning("speech unavailable; script generated only window=%s", session.window_id)
            self._set_state(session, LectureState.COMPLETED)
            return session

        try:
            await self._voice.load_preferences()
            if not token.is_valid():
                return session
            self._set_state(session, LectureState.PLAYING)
            await self._play(session)
        except Exception as exc:
            await self._fail(session, exc)
        return session

    def pause(self) -> bool:
        session = self._session
        if session is None or session.state != LectureState.PLAYING:
            return False
        self._resumed.clear()
        if self._voice is not None:
            self._voice.pause()
        self._set_state(session, LectureState.PAUSED)
        return True

    def resume(self) -> bool:
        session = self._session
        if session is None or session.state != LectureState.PAUSED:
            return False
        self._resumed.set()
        if self._voice is not None:
            self._voice.resume()
        self._set_state(session, LectureState.PLAYING)
        return True

    async def cancel(self) -> bool:
        """Invalidate the running session, stop speech, and clear the page mark."""
        session = self._session
        if session is None or session.state in (LectureState.COMPLETED, LectureState.CANCELLED):
            return False
        self._tokens.invalidate()
        self._resumed.set()
        if self._voice is not None:
            self._voice.cancel()
        self._set_state(session, LectureState.CANCELLED)
        await self._clear(session, end=True)
        logger.info("narration cancelled window=%s at_step=%d", session.window_id, session.current_index)
        return True

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def _play(self, session: LectureSession) -> None:
        steps = [
            RunnerStep(name=f"step-{index}", fn=self._step_fn(index))
            for index in range(len(session.steps))
        ]
        result = await StepRunner(steps, is_valid=session.token.is_valid).run(session)
        if not session.token.is_valid():
            logger.info("narration superseded window=%s completed_steps=%d", session.window_id, result.completed)
            return
        await self._clear(session, end=True)
        self._set_state(session, LectureState.COMPLETED)
        logger.info("narration completed window=%s steps=%d", session.window_id, result.completed)

    def _step_fn(self, index: int):
        async def run(session: LectureSession) -> None:
            await self._run_step(session, index)

        return run

    async def _run_step(self, session: LectureSession, index: int) -> None:
        token = session.token
        # A pause holds the next step until resume.
        await self._resumed.wait()
        if not token.is_valid():
            return
        step = session.steps[index]
        session.current_index = index
        self._notify(self.on_step, index, step)
        logger.info("narration step=%d anchor=%r", index, step.anchor_text)

        prepared = await self._hub.submit(
            RequestKind.LECTURE_PREPARE_STEP,
            {
                "window_id": self._sender.window_id,
                "token": session.page_token,
                "anchor_text": step.anchor_text,
                "fallback_scroll_percent": step.fallback_scroll_percent,
                "last_anchor_offset": session.last_anchor_offset,
            },
            self._sender,
        )
        if not token.is_valid():
            return
        if prepared.get("stale"):
            self._superseded_on_page(session)
            return
        if not prepared.get("success"):
            logger.warning("page relay failed step=%d error=%s; continuing", index, prepared.get("error"))
        elif prepared.get("found") and prepared.get("offset") is not None:
            session.record_anchor(float(prepared["offset"]))

        chunks = split_into_chunks(step.narration_text, self._chunk_limit)
        await self._voice.speak_chunks(chunks, token.is_valid)
        if not token.is_valid():
            return

        await self._clear(session)
        session.current_index = index + 1

    async def _begin_on_page(self) -> Optional[int]:
        begun = await self._hub.submit(RequestKind.LECTURE_BEGIN, {"window_id": self._sender.window_id}, self._sender)
        if not begun.get("success") or begun.get("token") is None:
            logger.warning("page did not begin narration error=%s; steps run unfenced", begun.get("error"))
            return None
        return int(begun["token"])

    def _superseded_on_page(self, session: LectureSession) -> None:
        # Another narrator owns the page now; this session must stop driving it.
        self._tokens.invalidate()
        if self._voice is not None:
            self._voice.cancel()
        self._set_state(session, LectureState.CANCELLED)
        logger.info("narration superseded on page window=%s at_step=%d", session.window_id, session.current_index)

    async def _fail(self, session: LectureSession, exc: Exception) -> None:
        if not session.token.is_valid():
            logger.info("superseded narration failed window=%s error=%s", session.window_id, exc)
            return
        self._tokens.invalidate()
        self._resumed.set()
        if self._voice is not None:
            self._voice.cancel()
        session.note = f"Narration stopped: {exc}"
        await self._clear(session, end=True)
        self._set_state(session, LectureState.IDLE)
        logger.error(
            "narration failed window=%s step=%d error=%s", session.window_id, session.current_index, exc, exc_info=exc
        )

    async def _clear(self, session: LectureSession, end: bool = False) -> None:
        cleared = await self._hub.submit(
            RequestKind.LECTURE_CLEAR,
            {"window_id": self._sender.window_id, "token": session.page_token, "end": end},
            self._sender,
        )
        if not cleared.get("success"):
            logger.warning("lecture mark clear failed error=%s", cleared.get("error"))

    def _set_state(self, session: LectureSession, state: LectureState) -> None:
        if session is not self._session:
            return
        session.state = state
        logger.debug("narration state=%s window=%s", state.value, session.window_id)
        self._notify(self.on_state, state)

    def _notify(self, callback: Optional[Callable[..., None]], *args) -> None:
        # Observers report progress; a broken one must not stop the narration.
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.warning("narration observer failed callback=%r error=%s", callback, exc)
