"""Host speech capabilities. Real engines live outside this package."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol


@dataclass(frozen=True)
class Voice:
    name: str
    lang: str
    default: bool = False


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    is_final: bool


class SpeechSynthesizer(Protocol):
    """Text-to-speech with voice enumeration, rate, and pause/resume/cancel."""

    available: bool

    async def speak(self, text: str, voice: Optional[Voice], rate: float, lang: str) -> None:
        """Resolve when the utterance ends; raise when it errors."""
        ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    def cancel(self) -> None: ...

    def list_voices(self) -> List[Voice]:
        """Voices known right now; may be empty until the host finishes loading."""
        ...

    async def voices_changed(self) -> None:
        """Resolve when the host reports its voice list. It may never resolve."""
        ...


ResultsCallback = Callable[[List[RecognitionResult]], Awaitable[None]]


class SpeechRecognizer(Protocol):
    """Speech-to-text delivering interim and final results."""

    available: bool

    def start(
        self,
        lang: str,
        on_results: ResultsCallback,
        on_end: Callable[[], None],
        on_error: Callable[[str], None],
    ) -> None: ...

    def stop(self) -> None: ...
