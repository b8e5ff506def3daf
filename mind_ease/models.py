"""
Shared data models for the Mind Ease service.

This module defines the core domain models used across multiple layers
of the application (chat session, persistence, API, CLI).
"""

import time
import uuid
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["user", "model"]


def new_id() -> str:
    return str(uuid.uuid4())


class Tone(str, Enum):
    """Soft behavioural hint prepended to each chat turn."""

    EMPATHETIC = "Empathetic"
    CASUAL = "Casual"
    FORMAL = "Formal"
    DIRECT = "Direct"


DEFAULT_TONE = Tone.EMPATHETIC


class User(BaseModel):
    """Represents a signed-up account (without credentials)."""

    id: str = Field(..., description="Unique user identifier")
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Sign-in email address")


class WebSource(BaseModel):
    uri: str = Field(..., description="Address of the cited page")
    title: str = Field("", description="Title of the cited page")


class GroundingChunk(BaseModel):
    """A citation record for a web source consulted by the retrieval tool."""

    web: WebSource | None = Field(None, description="Web source, when present")


class Message(BaseModel):
    """One chat message, either from the user or from the model."""

    id: str = Field(default_factory=new_id, description="Unique message id")
    role: Role = Field(..., description="Author of the message")
    text: str = Field("", description="Message text; grows while streaming")
    timestamp: float = Field(
        default_factory=time.time, description="Unix timestamp of creation"
    )
    grounding_chunks: list[GroundingChunk] | None = Field(
        None, description="Citation sources, model messages only"
    )


class MoodEntry(BaseModel):
    """Represents one logged mood."""

    id: str = Field(default_factory=new_id, description="Unique entry id")
    timestamp: float = Field(
        default_factory=time.time, description="Unix timestamp when mood was logged"
    )
    score: int = Field(..., ge=1, le=10, description="Mood score on a 1-10 scale")
    note: str = Field("", description="Free-form note")


class MoodSnapshot(BaseModel):
    """Mood entries together with the path that served them."""

    entries: list[MoodEntry] = Field(default_factory=list)
    source: Literal["remote", "cache"] = Field(
        "cache", description="'remote' when freshly fetched, 'cache' otherwise"
    )


class StreamChunk(BaseModel):
    """One partial piece of a streamed model reply."""

    text_delta: str = Field("", description="Text to append to the running reply")
    grounding_chunks: list[GroundingChunk] | None = Field(
        None, description="Latest citation snapshot, not a delta"
    )


class DailyMood(BaseModel):
    """One day of the weekly mood series."""

    day: str = Field(..., description="Short weekday label, e.g. 'Mon'")
    score: int | None = Field(None, description="Latest score of the day, if any")
    entry: MoodEntry | None = Field(None, description="Entry the score came from")
