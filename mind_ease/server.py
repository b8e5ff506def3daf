"""
FastAPI server for the Mind Ease service.

This module implements the HTTP API behind the browser client: accounts and
sessions, the chat transcript with streamed replies over Server-Sent Events,
the mood journal, and voice transcript interpretation.
"""

import json
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing, asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .auth import AccountStore
from .chat import ChatController
from .config import Settings
from .errors import AuthError, MindEaseError, TurnInProgressError, ValidationError
from .gemini import GenerativeChatSession
from .insights import average_mood, sort_moods, weekly_mood_series
from .models import DailyMood, Message, MoodEntry, Tone, User
from .store import HttpMoodSource, JsonFileKeyValueStore, MemoryKeyValueStore, PersistenceGateway
from .voice import describe_recognition_error, interpret_transcript

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], GenerativeChatSession]


# API Request/Response Schemas
class SignUpRequest(BaseModel):
    email: str = Field(..., description="Sign-in email address")
    password: str = Field(..., description="Account password")
    name: str = Field(..., description="Display name")


class SignInRequest(BaseModel):
    email: str
    password: str


class SessionResponse(BaseModel):
    token: str = Field(..., description="Bearer token for later requests")
    user: User


class UserResponse(BaseModel):
    user: User


class MessagesResponse(BaseModel):
    messages: list[Message]


class SendMessageRequest(BaseModel):
    text: str = Field(..., description="What the user wants to say")
    tone: Tone | None = Field(None, description="Tone for this turn; stored preference when omitted")


class ToneUpdate(BaseModel):
    tone: Tone = Field(..., description="Preferred tone for later turns")


class ToneResponse(BaseModel):
    tone: Tone


class MoodCreate(BaseModel):
    score: int | float = Field(..., description="Mood score on a 1-10 scale")
    note: str = Field("", description="Free-form note")


class MoodResponse(BaseModel):
    mood: MoodEntry


class MoodsResponse(BaseModel):
    moods: list[MoodEntry] = Field(..., description="Entries, newest first")
    source: str = Field(..., description="'remote' or 'cache'")


class MoodSummaryResponse(BaseModel):
    average: float
    count: int
    week: list[DailyMood]


class TranscriptSegmentPayload(BaseModel):
    text: str
    is_final: bool = True


class TranscriptRequest(BaseModel):
    segments: list[TranscriptSegmentPayload]
    current_input: str = Field("", description="Text currently in the input field")


class VoiceResponse(BaseModel):
    action: str = Field(..., description="clear_chat, open_timer, insert or none")
    input_text: str


class VoiceErrorRequest(BaseModel):
    code: str


class VoiceNoticeResponse(BaseModel):
    code: str
    message: str
    soft: bool


def build_gateway(settings: Settings) -> PersistenceGateway:
    kv = (
        JsonFileKeyValueStore(settings.data_path)
        if settings.data_path
        else MemoryKeyValueStore()
    )
    remote = HttpMoodSource(settings.remote_moods_url) if settings.remote_moods_url else None
    return PersistenceGateway(kv, remote_moods=remote)


def _sse(event: str, payload: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def create_app(
    settings: Settings | None = None,
    gateway: PersistenceGateway | None = None,
    session_factory: SessionFactory | None = None,
) -> FastAPI:
    """
    Create a FastAPI application.

    Args:
        settings: Service configuration; read from the environment when omitted
        gateway: Persistence gateway; built from the settings when omitted
        session_factory: Creates one generative chat session per signed-in user

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.from_env()
    gateway = gateway or build_gateway(settings)
    accounts = AccountStore(gateway.kv)
    if session_factory is None:

        def session_factory() -> GenerativeChatSession:
            return GenerativeChatSession.from_settings(settings)

    # One conversation per sign-in token
    controllers: dict[str, ChatController] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan context manager for FastAPI application."""
        yield
        for controller in controllers.values():
            await controller.session.aclose()
        controllers.clear()

    app = FastAPI(
        title="Mind Ease",
        description="Mental wellness companion: chat, mood journal and voice input",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        status_code = 409 if isinstance(exc, TurnInProgressError) else 422
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(MindEaseError)
    async def service_error_handler(request: Request, exc: MindEaseError) -> JSONResponse:
        logger.exception("Unhandled service error: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    async def current_session(
        authorization: str | None = Header(None),
    ) -> tuple[str, User]:
        scheme, _, token = (authorization or "").partition(" ")
        user = await accounts.current_user(token) if scheme.lower() == "bearer" else None
        if user is None:
            raise AuthError("Not signed in")
        return token, user

    async def current_user(session: tuple[str, User] = Depends(current_session)) -> User:
        return session[1]

    async def chat_controller(
        session: tuple[str, User] = Depends(current_session),
    ) -> ChatController:
        token, user = session
        controller = controllers.get(token)
        if controller is None:
            controller = ChatController(user, gateway, session_factory())
            await controller.load()
            controllers[token] = controller
        return controller

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "mind-ease"}

    # MARK: - Accounts

    @app.post("/auth/signup", status_code=201)
    async def sign_up(request: SignUpRequest) -> UserResponse:
        try:
            user = await accounts.sign_up(request.email, request.password, request.name)
        except AuthError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return UserResponse(user=user)

    @app.post("/auth/signin")
    async def sign_in(request: SignInRequest) -> SessionResponse:
        token, user = await accounts.sign_in(request.email, request.password)
        return SessionResponse(token=token, user=user)

    @app.post("/auth/signout", status_code=204)
    async def sign_out(session: tuple[str, User] = Depends(current_session)) -> None:
        token, _ = session
        await accounts.sign_out(token)
        controller = controllers.pop(token, None)
        if controller is not None:
            controller.reset()
            await controller.session.aclose()

    @app.get("/auth/me")
    async def me(user: User = Depends(current_user)) -> UserResponse:
        return UserResponse(user=user)

    # MARK: - Chat

    @app.get("/chat/messages")
    async def get_messages(
        controller: ChatController = Depends(chat_controller),
    ) -> MessagesResponse:
        return MessagesResponse(messages=controller.transcript)

    @app.post("/chat/messages")
    async def send_message(
        request: SendMessageRequest,
        controller: ChatController = Depends(chat_controller),
    ) -> StreamingResponse:
        """
        Send a message and stream the reply via Server-Sent Events.

        Emits a ``message`` event with the user message, then one with the
        model message after every chunk, and a final ``done`` event.
        """
        controller.ensure_can_send(request.text)
        tone = request.tone or await gateway.get_tone(controller.user.id)

        async def event_generator() -> AsyncGenerator[str, None]:
            try:
                async with aclosing(controller.send_turn(request.text, tone)) as stream:
                    async for message in stream:
                        yield _sse("message", message.model_dump(mode="json"))
            except MindEaseError as e:
                yield _sse("error", {"error": str(e)})
                return
            yield _sse("done", {})

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )

    @app.delete("/chat/messages")
    async def clear_messages(
        controller: ChatController = Depends(chat_controller),
    ) -> MessagesResponse:
        return MessagesResponse(messages=await controller.clear_chat())

    @app.get("/chat/export")
    async def export_chat(
        controller: ChatController = Depends(chat_controller),
    ) -> PlainTextResponse:
        filename = controller.export_filename()
        return PlainTextResponse(
            controller.export_transcript(),
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/chat/tone")
    async def get_tone(user: User = Depends(current_user)) -> ToneResponse:
        return ToneResponse(tone=await gateway.get_tone(user.id))

    @app.put("/chat/tone")
    async def set_tone(update: ToneUpdate, user: User = Depends(current_user)) -> ToneResponse:
        await gateway.set_tone(user.id, update.tone)
        return ToneResponse(tone=update.tone)

    # MARK: - Moods

    @app.get("/moods")
    async def get_moods(user: User = Depends(current_user)) -> MoodsResponse:
        snapshot = await gateway.get_moods(user.id)
        return MoodsResponse(moods=sort_moods(snapshot.entries), source=snapshot.source)

    @app.post("/moods", status_code=201)
    async def add_mood(mood: MoodCreate, user: User = Depends(current_user)) -> MoodResponse:
        entry = await gateway.add_mood(user.id, mood.score, mood.note)
        return MoodResponse(mood=entry)

    @app.delete("/moods/{mood_id}", status_code=204)
    async def delete_mood(mood_id: str, user: User = Depends(current_user)) -> None:
        await gateway.delete_mood(user.id, mood_id)

    @app.get("/moods/summary")
    async def mood_summary(user: User = Depends(current_user)) -> MoodSummaryResponse:
        entries = (await gateway.get_moods(user.id)).entries
        return MoodSummaryResponse(
            average=average_mood(entries),
            count=len(entries),
            week=weekly_mood_series(entries),
        )

    # MARK: - Voice

    @app.post("/voice/transcript")
    async def voice_transcript(
        request: TranscriptRequest,
        controller: ChatController = Depends(chat_controller),
    ) -> VoiceResponse:
        """
        Interpret final transcript segments from the browser's recognizer.

        "clear chat" clears the conversation right away; "open timer" is
        returned for the client to act on; other speech extends the input.
        """
        transcript = "".join(s.text for s in request.segments if s.is_final)
        outcome = interpret_transcript(transcript, request.current_input)
        if outcome.action == "clear_chat":
            await controller.clear_chat()
        return VoiceResponse(action=outcome.action, input_text=outcome.input_text)

    @app.post("/voice/error")
    async def voice_error(request: VoiceErrorRequest) -> VoiceNoticeResponse:
        notice = describe_recognition_error(request.code)
        return VoiceNoticeResponse(code=notice.code, message=notice.message, soft=notice.soft)

    return app


# Default app instance for the uvicorn runner
app = create_app()


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "mind_ease.server:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
