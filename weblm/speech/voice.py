"""Voice output and input built on the host speech protocols."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from ..errors import CapabilityError
from ..hub.messages import EventKind
from ..hub.router import Hub
from ..settings_store import SettingsStore
from ..utils import complete_sentences, split_sentences
from .host import RecognitionResult, SpeechRecognizer, SpeechSynthesizer, Voice

logger = logging.getLogger("weblm.speech")

SELECTED_VOICE_KEY = "selectedVoice"
VOICE_RATE_KEY = "voiceRate"
AUTO_SPEAK_KEY = "autoSpeak"

DEFAULT_LANG = "zh-CN"
DEFAULT_RATE = 1.0


class VoiceService:
    """Speech output: voice discovery, voice choice, and sequential chunk playback."""

    def __init__(
        self,
        synthesizer: Optional[SpeechSynthesizer],
        store: Optional[SettingsStore] = None,
        voice_wait: float = 1.0,
        lang: str = DEFAULT_LANG,
    ) -> None:
        self._synth = synthesizer
        self._store = store
        self._voice_wait = voice_wait
        self._lang = lang
        self._voice: Optional[Voice] = None
        self._rate = DEFAULT_RATE
        self._paused = False
        self._resumed = asyncio.Event()
        self._resumed.set()
        self.speaking = False

    @property
    def available(self) -> bool:
        return self._synth is not None and bool(getattr(self._synth, "available", False))

    @property
    def voice(self) -> Optional[Voice]:
        return self._voice

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def paused(self) -> bool:
        return self._paused

    async def get_voices(self) -> List[Voice]:
        """Purpose: Return the host's voices, waiting briefly if none are loaded yet.
        Inputs/Outputs: No inputs; returns a possibly empty list of Voice.
        Side Effects / State: None.
        Dependencies: SpeechSynthesizer.list_voices and voices_changed.
        Failure Modes: Returns whatever is available after voice_wait seconds.
        If Removed: Voice choice races the host's asynchronous voice loading.
        Testing Notes: A synthesizer whose voices_changed never resolves.
        """
        # Host enumeration may resolve late or never; bound the wait.
        if not self.available:
            return []
        voices = list(self._synth.list_voices())
        if voices:
            return voices
        try:
            await asyncio.wait_for(self._synth.voices_changed(), timeout=self._voice_wait)
        except asyncio.TimeoutError:
            logger.info("voice list not reported within %.1fs; using what is available", self._voice_wait)
        return list(self._synth.list_voices())

    def choose_voice(self, voices: Iterable[Voice], name: Optional[str] = None) -> Optional[Voice]:
        """Voice by exact name, else the first whose language matches the prefix."""
        voices = list(voices)
        if name:
            for voice in voices:
                if voice.name == name:
                    return voice
        prefix = self._lang.split("-")[0].lower()
        for voice in voices:
            if voice.lang.lower().startswith(prefix):
                return voice
        return None

    async def load_preferences(self) -> None:
        """Read voice name and rate from settings and resolve the voice."""
        stored: Dict[str, Any] = {}
        if self._store is not None:
            stored = await self._store.get([SELECTED_VOICE_KEY, VOICE_RATE_KEY])
        try:
            self._rate = float(stored.get(VOICE_RATE_KEY) or DEFAULT_RATE)
        except (TypeError, ValueError):
            logger.warning("invalid voiceRate=%r; using %.1f", stored.get(VOICE_RATE_KEY), DEFAULT_RATE)
            self._rate = DEFAULT_RATE
        self._voice = self.choose_voice(await self.get_voices(), stored.get(SELECTED_VOICE_KEY))
        logger.info("voice preferences voice=%s rate=%.2f", self._voice.name if self._voice else None, self._rate)

    async def auto_speak_enabled(self) -> bool:
        if self._store is None:
            return False
        stored = await self._store.get([AUTO_SPEAK_KEY])
        return bool(stored.get(AUTO_SPEAK_KEY))

    async def speak(self, text: str) -> None:
        if not self.available:
            raise CapabilityError("speech synthesis is not available")
        self.speaking = True
        try:
            await self._synth.speak(text, self._voice, self._rate, self._lang)
        finally:
            self.speaking = False

    async def speak_chunks(self, chunks: Iterable[str], should_continue: Callable[[], bool]) -> int:
        """Purpose: Play chunks strictly one after another.
        Inputs/Outputs: Inputs are text chunks and a validity predicate; returns the
            number of chunks that finished playing.
        Side Effects / State: Drives the synthesizer; waits while paused.
        Dependencies: speak, pause state, should_continue (usually a token check).
        Failure Modes: A chunk that errors is logged and the next one plays.
        If Removed: Narration has no paced audio.
        Testing Notes: Pause mid-way and verify no further chunk starts until resume.
        """
        # Validity is checked at every boundary: before and after each pause wait.
        played = 0
        for chunk in chunks:
            if not should_continue():
                break
            await self._resumed.wait()
            if not should_continue():
                break
            try:
                await self.speak(chunk)
                played += 1
            except CapabilityError:
                raise
            except Exception as exc:
                logger.warning("speech chunk failed error=%s", exc)
        return played

    async def speak_stream(
        self,
        deltas: AsyncIterator[str],
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Speak complete sentences as soon as a streamed reply delivers them.

        Sentences go through speak_chunks, so pause, validity and chunk errors
        behave as they do for narration. The unfinished tail is spoken when the
        stream ends.
        """
        should_continue = should_continue or (lambda: True)
        spoken = 0
        buffer = ""
        async for delta in deltas:
            buffer += delta
            sentences, buffer = complete_sentences(buffer)
            if sentences:
                spoken += await self.speak_chunks(sentences, should_continue)
            if not should_continue():
                return spoken
        return spoken + await self.speak_chunks(split_sentences(buffer), should_continue)

    def pause(self) -> None:
        self._paused = True
        self._resumed.clear()
        if self.available:
            self._synth.pause()

    def resume(self) -> None:
        self._paused = False
        self._resumed.set()
        if self.available:
            self._synth.resume()

    def cancel(self) -> None:
        # Release any waiter; the caller's token check ends playback.
        self._paused = False
        self._resumed.set()
        self.speaking = False
        if self.available:
            self._synth.cancel()


class VoiceInput:
    """Speech input: aggregates recognizer results and forwards final text."""

    def __init__(
        self,
        recognizer: Optional[SpeechRecognizer],
        hub: Optional[Hub] = None,
        window_id: Optional[int] = None,
        voice: Optional[VoiceService] = None,
        on_result: Optional[Callable[[Dict[str, Any]], None]] = None,
        lang: str = DEFAULT_LANG,
    ) -> None:
        self._recognizer = recognizer
        self._hub = hub
        self._window_id = window_id
        self._voice = voice
        self._on_result = on_result
        self._lang = lang
        self.listening = False
        self.last_error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self._recognizer is not None and bool(getattr(self._recognizer, "available", False))

    def start_listening(self) -> None:
        if not self.available:
            raise CapabilityError("speech recognition is not available")
        if self.listening:
            return
        if self._voice is not None and self._voice.speaking:
            self._voice.cancel()
        self.last_error = None
        self._recognizer.start(self._lang, self.handle_results, self._on_end, self._on_error)
        self.listening = True

    def stop_listening(self) -> None:
        if self.available and self.listening:
            self._recognizer.stop()
        self.listening = False

    def toggle_listening(self) -> bool:
        if self.listening:
            self.stop_listening()
        else:
            self.start_listening()
        return self.listening

    async def handle_results(self, results: List[RecognitionResult]) -> Dict[str, Any]:
        """Split a result batch into final and interim text; broadcast final text."""
        final = "".join(result.transcript for result in results if result.is_final)
        interim = "".join(result.transcript for result in results if not result.is_final)
        aggregated = {"final": final, "interim": interim, "is_final": bool(final)}
        if self._on_result is not None:
            self._on_result(aggregated)
        if final and self._hub is not None:
            await self._hub.broadcast(EventKind.VOICE_RESULT, {"text": final}, window_id=self._window_id)
        return aggregated

    def _on_end(self) -> None:
        self.listening = False

    def _on_error(self, error: str) -> None:
        logger.warning("speech recognition error=%s", error)
        self.last_error = error
        self.listening = False
