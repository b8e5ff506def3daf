"""
Voice input: turn speech transcripts into text or chat commands.

Final transcript segments are checked for two spoken commands, "clear chat"
and "open timer", which fire their actions instead of inserting text. Anything
else is appended to the current draft input. The speech engine itself sits
behind the small ``RecognitionEngine`` protocol, so the browser's speech API,
an offline recognizer or a test double can drive the same interceptor.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

CLEAR_CHAT_COMMAND = "clear chat"
OPEN_TIMER_COMMAND = "open timer"

VoiceAction = Literal["clear_chat", "open_timer", "insert", "none"]
Callback = Callable[[], Awaitable[None] | None]

UNSUPPORTED = "unsupported"
SOFT_ERRORS = frozenset({"no-speech", "aborted"})

_ERROR_MESSAGES = {
    "no-speech": "No speech detected. Please speak closer to the microphone.",
    "audio-capture": "Microphone not found. Please check your connections.",
    "not-allowed": "Microphone permission denied. Please allow access in browser settings.",
    "network": "Network error. Voice input requires internet connection.",
    "aborted": "Voice input stopped.",
    "service-not-allowed": "Voice input is not allowed by this browser.",
    UNSUPPORTED: "Voice input is not supported in this browser. Please use Chrome or Edge.",
}


@dataclass(frozen=True)
class TranscriptSegment:
    text: str
    is_final: bool = True


@dataclass(frozen=True)
class VoiceOutcome:
    action: VoiceAction
    input_text: str


@dataclass(frozen=True)
class RecognitionNotice:
    code: str
    message: str
    soft: bool


class RecognitionListener(Protocol):
    async def handle_results(self, segments: Iterable[TranscriptSegment]) -> VoiceOutcome: ...

    def handle_error(self, code: str) -> RecognitionNotice: ...

    def handle_end(self) -> None: ...


class RecognitionEngine(Protocol):
    """A continuous speech-to-text session."""

    def start(self, listener: RecognitionListener) -> None: ...

    def stop(self) -> None: ...


def interpret_transcript(transcript: str, current_input: str) -> VoiceOutcome:
    """
    Decide what a final transcript does.

    Args:
        transcript: Final recognized text
        current_input: Text currently in the input field

    Returns:
        The action to take and the resulting input text
    """
    spoken = (transcript or "").strip()
    command = spoken.lower()
    if not spoken:
        return VoiceOutcome("none", current_input)
    if CLEAR_CHAT_COMMAND in command:
        return VoiceOutcome("clear_chat", current_input)
    if OPEN_TIMER_COMMAND in command:
        return VoiceOutcome("open_timer", current_input)

    separator = " " if current_input and not current_input[-1].isspace() else ""
    return VoiceOutcome("insert", current_input + separator + spoken)


def describe_recognition_error(code: str) -> RecognitionNotice:
    message = _ERROR_MESSAGES.get(code, f"Voice input error: {code}")
    return RecognitionNotice(code=code, message=message, soft=code in SOFT_ERRORS)


async def _invoke(callback: Callback | None) -> None:
    if callback is None:
        return
    result = callback()
    if inspect.isawaitable(result):
        await result


class VoiceCommandInterceptor:
    """
    Bridges one speech recognition session to the chat input.

    Only one recognition session runs at a time: ``toggle`` starts listening
    when idle and stops the running session otherwise.
    """

    def __init__(
        self,
        engine_factory: Callable[[], RecognitionEngine] | None,
        on_clear_chat: Callback | None = None,
        on_open_timer: Callback | None = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._on_clear_chat = on_clear_chat
        self._on_open_timer = on_open_timer
        self._engine: RecognitionEngine | None = None
        self.input_text = ""
        self.notice: RecognitionNotice | None = None

    @property
    def is_listening(self) -> bool:
        return self._engine is not None

    def toggle(self) -> bool:
        """
        Start or stop listening.

        Returns:
            True if a recognition session is now active
        """
        if self._engine is not None:
            self.stop()
            return False

        if self._engine_factory is None:
            self.notice = describe_recognition_error(UNSUPPORTED)
            return False

        self.notice = None
        try:
            engine = self._engine_factory()
            self._engine = engine
            engine.start(self)
        except Exception as e:
            logger.error("Failed to start speech recognition: %s", e)
            self._engine = None
            self.notice = RecognitionNotice(
                code="start-failed",
                message="Failed to initialize voice input.",
                soft=False,
            )
            return False
        return True

    def stop(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            engine.stop()

    def close(self) -> None:
        """Tear down recognition when the owning view goes away."""
        self.stop()

    async def handle_results(self, segments: Iterable[TranscriptSegment]) -> VoiceOutcome:
        """Consume recognition results; interim segments are ignored."""
        transcript = "".join(s.text for s in segments if s.is_final)
        outcome = interpret_transcript(transcript, self.input_text)

        if outcome.action == "clear_chat":
            self.stop()
            await _invoke(self._on_clear_chat)
        elif outcome.action == "open_timer":
            self.stop()
            await _invoke(self._on_open_timer)
        elif outcome.action == "insert":
            self.input_text = outcome.input_text
        return outcome

    def handle_error(self, code: str) -> RecognitionNotice:
        notice = describe_recognition_error(code)
        if notice.soft:
            logger.info("Speech recognition ended: %s", code)
        else:
            logger.warning("Speech recognition error: %s", code)
        self._engine = None
        self.notice = notice
        return notice

    def handle_end(self) -> None:
        self._engine = None
