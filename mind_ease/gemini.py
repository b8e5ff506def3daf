"""
Streaming chat session against the Gemini generative-language API.

A ``GenerativeChatSession`` holds one ongoing conversation: the persona and
sampling configuration fixed at creation, plus the running history sent along
with every turn. Replies are consumed as Server-Sent Events and handed out as
``StreamChunk`` objects while they arrive.

Failures never escape ``send_turn``. They are turned into one synthetic model
chunk with a user-facing notice, and remote failures also reset the session so
the next turn starts from a fresh conversation.
"""

import json
import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import aclosing
from enum import Enum
from typing import Any

import httpx
from httpx_sse import aconnect_sse
from pydantic import ValidationError as PydanticValidationError

from .config import DEFAULT_API_BASE_URL, DEFAULT_MODEL, Settings
from .errors import (
    ChatServiceError,
    ConfigurationError,
    RateLimitError,
    TransientRemoteError,
    TurnInProgressError,
)
from .models import DEFAULT_TONE, GroundingChunk, Message, StreamChunk, Tone

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = """
You are Mind Ease, a warm and privacy-respecting mental wellness companion.
You offer emotional support, active listening and gentle guidance drawn from
Cognitive Behavioral Therapy techniques.

Guidelines:
1. Validate the user's feelings first. Stay kind and non-judgmental.
2. You are not a doctor or a crisis line. If the user mentions severe distress,
   self-harm or suicidal thoughts, say so plainly and compassionately, and urge
   them to contact a local emergency helpline or a mental health professional.
3. Keep replies conversational and short. No lectures.
4. When it helps, suggest one small, concrete step such as a breathing
   exercise, a journaling prompt or a grounding technique.
5. If you look information up, keep it relevant to the user's wellbeing.

Never diagnose. Stay with what the user is feeling right now.
"""

REDACTED = "API_KEY"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    STREAMING = "streaming"


def tone_instruction(tone: Tone | str) -> str:
    """Per-turn prefix asking the model for a given tone."""
    label = tone.value if isinstance(tone, Tone) else str(tone)
    return f"(Please respond in a {label.lower()} tone) "


def _content(role: str, text: str) -> dict[str, Any]:
    return {"role": role, "parts": [{"text": text}]}


class GenerativeChatSession:
    """
    One conversation with the remote text-generation service.

    The session starts ``UNINITIALIZED`` and is initialized lazily by the
    first turn. A turn moves it to ``STREAMING`` and back to ``READY`` on
    success; a remote failure drops it back to ``UNINITIALIZED``. History is
    only ever replaced wholesale, never edited in place.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_API_BASE_URL,
        temperature: float = 0.7,
        enable_search: bool = True,
        system_instruction: str = SYSTEM_INSTRUCTION,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = (api_key or "").strip() or None
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._enable_search = enable_search
        self._system_instruction = system_instruction
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._history: tuple[dict[str, Any], ...] = ()
        self._state = SessionState.UNINITIALIZED
        self._epoch = 0
        self.last_error: ChatServiceError | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, client: httpx.AsyncClient | None = None
    ) -> "GenerativeChatSession":
        return cls(
            api_key=settings.api_key,
            model=settings.model,
            base_url=settings.api_base_url,
            temperature=settings.temperature,
            enable_search=settings.enable_search,
            client=client,
            timeout=settings.request_timeout,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def history(self) -> list[dict[str, Any]]:
        return [dict(item) for item in self._history]

    # MARK: - Lifecycle

    def initialize(self, history: Iterable[Message | dict[str, Any]] | None = None) -> None:
        """
        (Re)create the conversation, optionally seeded with prior turns.

        Args:
            history: Earlier messages, as Message objects or ``{role, text}`` dicts
        """
        seeded: list[dict[str, Any]] = []
        for item in history or ():
            if isinstance(item, Message):
                role, text = item.role, item.text
            else:
                role, text = item["role"], item.get("text", "")
            if text:
                seeded.append(_content(role, text))
        self._history = tuple(seeded)
        self._state = SessionState.READY
        self._epoch += 1
        logger.debug("Chat session initialized with %d prior turns", len(seeded))

    def reset(self) -> None:
        """Discard the conversation; the next turn starts from scratch."""
        self._history = ()
        self._state = SessionState.UNINITIALIZED
        self._epoch += 1
        logger.info("Chat session reset")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # MARK: - Turns

    async def send_turn(
        self, user_text: str, tone: Tone | str = DEFAULT_TONE
    ) -> AsyncGenerator[StreamChunk, None]:
        """
        Send one user utterance and stream the reply.

        Each chunk's ``text_delta`` is appended by the caller to rebuild the
        reply. ``grounding_chunks`` is a snapshot of citations so far.

        Yields:
            StreamChunk objects in arrival order
        """
        if self._state is SessionState.STREAMING:
            raise TurnInProgressError("A reply is already streaming")

        if not self._api_key:
            error = ConfigurationError("No API key configured")
            self.last_error = error
            logger.error("Chat turn skipped: %s", error)
            yield StreamChunk(text_delta=error.user_message)
            return

        if self._state is SessionState.UNINITIALIZED:
            self.initialize()
        epoch = self._epoch
        history = self._history
        reply_parts: list[str] = []

        self._state = SessionState.STREAMING
        try:
            async with aclosing(self._stream_reply(history, user_text, tone)) as stream:
                async for chunk in stream:
                    reply_parts.append(chunk.text_delta)
                    yield chunk
        except ChatServiceError as e:
            self.last_error = e
            logger.error("Generative service error: %s", self._redact(str(e)))
            if epoch == self._epoch:
                self.reset()
            yield StreamChunk(text_delta=e.user_message)
            return
        finally:
            # An abandoned stream leaves the history as it was before the turn
            if epoch == self._epoch and self._state is SessionState.STREAMING:
                self._state = SessionState.READY

        if epoch != self._epoch:
            logger.debug("Discarding reply from a replaced conversation")
            return
        self._history = history + (
            _content("user", user_text),
            _content("model", "".join(reply_parts)),
        )

    async def _stream_reply(
        self, history: tuple[dict[str, Any], ...], user_text: str, tone: Tone | str
    ) -> AsyncGenerator[StreamChunk, None]:
        payload = self._build_request(history, tone_instruction(tone) + user_text)
        client = self._get_client()
        try:
            async with aconnect_sse(
                client,
                "POST",
                f"{self._base_url}/models/{self._model}:streamGenerateContent",
                params={"alt": "sse"},
                json=payload,
                headers={"x-goog-api-key": self._api_key},
                timeout=self._timeout,
            ) as event_source:
                response = event_source.response
                if response.status_code >= 400:
                    await response.aread()
                    raise self._error_from_response(response)

                async for sse in event_source.aiter_sse():
                    if not sse.data:
                        continue
                    try:
                        data = json.loads(sse.data)
                        if isinstance(data, dict) and "error" in data:
                            raise self._error_from_payload(data["error"])
                        chunk = parse_stream_chunk(data)
                    except ValueError as e:
                        raise TransientRemoteError(
                            f"Malformed stream data: {e}",
                            user_message=self._failure_notice("Malformed response"),
                        ) from e

                    yield chunk
        except httpx.HTTPError as e:
            detail = self._redact(str(e)) or type(e).__name__
            raise TransientRemoteError(
                detail, user_message=self._failure_notice(detail)
            ) from e

    # MARK: - Internal helpers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _build_request(
        self, history: tuple[dict[str, Any], ...], prompt: str
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "contents": [*history, _content("user", prompt)],
            "systemInstruction": {"parts": [{"text": self._system_instruction}]},
            "generationConfig": {"temperature": self._temperature},
        }
        if self._enable_search:
            request["tools"] = [{"google_search": {}}]
        return request

    def _redact(self, text: str) -> str:
        if self._api_key:
            text = text.replace(self._api_key, REDACTED)
        return text

    def _failure_notice(self, detail: str) -> str:
        return (
            "I encountered an error connecting to the service: "
            f'"{self._redact(detail)}". Please try again.'
        )

    def _error_from_response(self, response: httpx.Response) -> ChatServiceError:
        try:
            body = response.json()
        except ValueError:
            body = None
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            error = {"code": response.status_code, **error}
        else:
            error = {
                "code": response.status_code,
                "message": f"HTTP {response.status_code} {response.reason_phrase}",
            }
        return self._error_from_payload(error)

    def _error_from_payload(self, error: Any) -> ChatServiceError:
        if not isinstance(error, dict):
            error = {"message": str(error)}
        message = self._redact(str(error.get("message") or "Unknown error"))
        status = str(error.get("status") or "")
        code = error.get("code")
        if (
            code == 429
            or status == "RESOURCE_EXHAUSTED"
            or "429" in message
            or "quota" in message.lower()
        ):
            return RateLimitError(message)
        return TransientRemoteError(message, user_message=self._failure_notice(message))


def _mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} is not an object")
    return value


def _sequence(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} is not a list")
    return value


def parse_stream_chunk(data: Any) -> StreamChunk:
    """
    Extract text and citations from one streamed response object.

    Raises:
        ValueError: If the object does not have the expected response shape
    """
    data = _mapping(data, "response")
    candidates = _sequence(data.get("candidates"), "candidates")
    if not candidates:
        return StreamChunk()
    candidate = _mapping(candidates[0], "candidate")

    content = _mapping(candidate.get("content"), "content")
    text = "".join(
        part["text"]
        for part in _sequence(content.get("parts"), "parts")
        if isinstance(part, dict)
        and isinstance(part.get("text"), str)
        and not part.get("thought")
    )

    grounding: list[GroundingChunk] = []
    metadata = _mapping(candidate.get("groundingMetadata"), "groundingMetadata")
    for item in _sequence(metadata.get("groundingChunks"), "groundingChunks"):
        try:
            grounding.append(GroundingChunk.model_validate(item))
        except PydanticValidationError:
            logger.debug("Skipping unreadable grounding chunk: %r", item)
    return StreamChunk(text_delta=text, grounding_chunks=grounding or None)
