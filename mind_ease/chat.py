"""
Chat controller: runs one user turn end to end.

The controller owns the visible transcript of one user, forwards each turn to
its ``GenerativeChatSession`` and persists both sides of the exchange. Every
turn is tagged with the conversation generation it started in; clearing or
resetting the chat bumps the generation, and a stream that finds itself stale
stops without touching the transcript or the store.
"""

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import aclosing
from datetime import date, datetime

from .errors import TurnInProgressError, ValidationError
from .gemini import GenerativeChatSession
from .models import DEFAULT_TONE, Message, Tone, User
from .store import PersistenceGateway

logger = logging.getLogger(__name__)

WELCOME_MESSAGE_ID = "welcome"


class ChatController:
    """Sequences chat turns for one signed-in user."""

    def __init__(
        self,
        user: User,
        gateway: PersistenceGateway,
        session: GenerativeChatSession,
    ) -> None:
        self.user = user
        self.session = session
        self._gateway = gateway
        self._transcript: list[Message] = []
        self._generation = 0
        self._streaming = False

    @property
    def transcript(self) -> list[Message]:
        return [m.model_copy(deep=True) for m in self._transcript]

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def generation(self) -> int:
        return self._generation

    def welcome_message(self) -> Message:
        return Message(
            id=WELCOME_MESSAGE_ID,
            role="model",
            text=(
                f"Hello {self.user.name}! I'm Mind Ease, your mental wellness "
                "companion. I'm here to listen, guide, and support you anytime. "
                "How are you feeling today?"
            ),
        )

    async def load(self) -> list[Message]:
        """
        Load the stored conversation and seed the chat session with it.

        An empty history shows a welcome message, which is never persisted.
        """
        try:
            history = await self._gateway.get_messages(self.user.id)
        except Exception:
            logger.exception("Failed to load chat history for %s", self.user.id)
            history = []

        if history:
            self._transcript = history
            self.session.initialize(history)
        else:
            self._transcript = [self.welcome_message()]
            self.session.initialize()
        return self.transcript

    def ensure_can_send(self, text: str) -> None:
        """
        Raises:
            ValidationError: If the text is empty or whitespace
            TurnInProgressError: If a reply is still streaming
        """
        if not text or not text.strip():
            raise ValidationError("Message text is empty")
        if self._streaming:
            raise TurnInProgressError("A reply is still streaming")

    async def send_turn(
        self, text: str, tone: Tone | str = DEFAULT_TONE
    ) -> AsyncGenerator[Message, None]:
        """
        Run one turn and stream its progress.

        The user message is appended and persisted first. The model reply is
        then appended empty and grows with every chunk; it is persisted once,
        after the stream ends.

        Yields:
            The user message, then a snapshot of the model message after the
            placeholder is added and after each applied chunk
        """
        self.ensure_can_send(text)
        self._streaming = True
        generation = self._generation
        try:
            user_message = Message(role="user", text=text)
            self._transcript.append(user_message)
            await self._persist(user_message)
            yield user_message.model_copy()

            reply = Message(role="model", text="")
            self._transcript.append(reply)
            yield reply.model_copy()

            async with aclosing(self.session.send_turn(text, tone)) as stream:
                async for chunk in stream:
                    if not self._is_current(generation, reply.id):
                        logger.info("Dropping stale reply %s", reply.id)
                        return
                    reply.text += chunk.text_delta
                    if chunk.grounding_chunks:
                        reply.grounding_chunks = chunk.grounding_chunks
                    yield reply.model_copy(deep=True)

            if not self._is_current(generation, reply.id):
                logger.info("Dropping stale reply %s", reply.id)
                return
            await self._persist(reply)
        except ValidationError:
            raise
        except Exception:
            # Transcript stays as it is; the session already reported remote errors inline
            logger.exception("Chat turn failed for %s", self.user.id)
        finally:
            if generation == self._generation:
                self._streaming = False

    async def clear_chat(self) -> list[Message]:
        """Erase the stored conversation and start a fresh one."""
        await self._gateway.clear_chat(self.user.id)
        self._generation += 1
        self._streaming = False
        self._transcript = [self.welcome_message()]
        self.session.reset()
        return self.transcript

    def reset(self) -> None:
        """Forget the in-memory conversation, e.g. on sign-out."""
        self._generation += 1
        self._streaming = False
        self._transcript = []
        self.session.reset()

    def export_transcript(self) -> str:
        """Render the transcript as plain text for download."""
        blocks = []
        for message in self._transcript:
            author = "You" if message.role == "user" else "Mind Ease"
            when = datetime.fromtimestamp(message.timestamp).strftime("%Y-%m-%d %H:%M:%S")
            blocks.append(f"[{when}] {author}: {message.text}")
        return "\n\n".join(blocks)

    def export_filename(self, today: date | None = None) -> str:
        today = today or date.today()
        slug = re.sub(r"\s+", "-", self.user.name.strip()).lower()
        return f"mind-ease-chat-{slug}-{today.isoformat()}.txt"

    # MARK: - Internal helpers

    def _is_current(self, generation: int, message_id: str) -> bool:
        if generation != self._generation:
            return False
        return any(m.id == message_id for m in self._transcript)

    async def _persist(self, message: Message) -> None:
        try:
            await self._gateway.add_message(self.user.id, message)
        except Exception:
            logger.exception("Failed to persist message %s", message.id)
