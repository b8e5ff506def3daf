"""
Persistence layer for the Mind Ease service.

This module provides a small key-value abstraction (in memory or backed by a
JSON file) and the persistence gateway that keeps per-user chat messages, mood
entries and tone preferences on top of it. Mood reads can optionally go through
a remote source first, falling back to the local cache when it fails.
"""

import asyncio
import json
import logging
import math
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Protocol

import httpx

from .errors import ValidationError
from .models import DEFAULT_TONE, Message, MoodEntry, MoodSnapshot, Tone

logger = logging.getLogger(__name__)

USERS_KEY = "mind_ease_users"
SESSIONS_KEY = "mind_ease_sessions"
MESSAGES_KEY = "mind_ease_messages"
MOODS_KEY = "mind_ease_moods"
TONES_KEY = "mind_ease_tones"

MIN_MOOD_SCORE = 1
MAX_MOOD_SCORE = 10


# MARK: - Key-value storage


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local storage of JSON-compatible values."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """
    Key-value storage persisted to a single JSON document.

    The whole document is rewritten on every change; last write wins. Calls may
    come from worker threads, so each one holds a lock around its file access.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable storage file %s", self._path)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8"
        )
        tmp_path.replace(self._path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)


# MARK: - Remote mood source


class RemoteMoodSource(Protocol):
    async def fetch_moods(self, user_id: str) -> list[MoodEntry]: ...


class HttpMoodSource:
    """Reads mood entries from a remote HTTP service."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    async def fetch_moods(self, user_id: str) -> list[MoodEntry]:
        url = f"{self._base_url}/users/{user_id}/moods"
        if self._client is not None:
            response = await self._client.get(url, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict):
            payload = payload.get("moods", [])
        return [MoodEntry.model_validate(item) for item in payload]


# MARK: - Gateway


class PersistenceGateway:
    """
    Per-user storage of chat messages, mood entries and tone preferences.

    Each collection is stored under its own key as a mapping of user id to
    that user's records. Mutations are serialized through an asyncio lock, and
    backend calls run in a worker thread to keep file I/O off the event loop.
    """

    def __init__(
        self,
        kv: KeyValueStore | None = None,
        remote_moods: RemoteMoodSource | None = None,
    ) -> None:
        self.kv: KeyValueStore = kv if kv is not None else MemoryKeyValueStore()
        self._remote_moods = remote_moods
        self._lock = asyncio.Lock()

    async def _read(self, key: str) -> dict[str, Any]:
        return await asyncio.to_thread(self.kv.get, key, {})

    async def _write(self, key: str, value: dict[str, Any]) -> None:
        await asyncio.to_thread(self.kv.set, key, value)

    # MARK: - Chat

    async def get_messages(self, user_id: str) -> list[Message]:
        """
        Get the stored chat log of a user.

        Returns:
            Messages in chronological (insertion) order
        """
        all_messages = await self._read(MESSAGES_KEY)
        return [Message.model_validate(m) for m in all_messages.get(user_id, [])]

    async def add_message(self, user_id: str, message: Message) -> None:
        async with self._lock:
            all_messages = await self._read(MESSAGES_KEY)
            all_messages.setdefault(user_id, []).append(message.model_dump(mode="json"))
            await self._write(MESSAGES_KEY, all_messages)

    async def clear_chat(self, user_id: str) -> None:
        """Empty the chat log of a user; mood history is untouched."""
        async with self._lock:
            all_messages = await self._read(MESSAGES_KEY)
            all_messages[user_id] = []
            await self._write(MESSAGES_KEY, all_messages)

    # MARK: - Moods

    async def _cached_moods(self, user_id: str) -> list[MoodEntry]:
        all_moods = await self._read(MOODS_KEY)
        return [MoodEntry.model_validate(m) for m in all_moods.get(user_id, [])]

    async def get_moods(self, user_id: str) -> MoodSnapshot:
        """
        Get the mood entries of a user.

        With a remote source configured, a live fetch is attempted first and
        replaces the local cache on success. When it fails, the cached entries
        are served instead.

        Returns:
            A MoodSnapshot whose ``source`` tells which path served the entries
        """
        if self._remote_moods is None:
            return MoodSnapshot(entries=await self._cached_moods(user_id), source="cache")

        try:
            entries = await self._remote_moods.fetch_moods(user_id)
        except Exception as e:
            logger.warning(
                "Remote mood fetch failed for %s, serving cache: %s", user_id, e
            )
            return MoodSnapshot(entries=await self._cached_moods(user_id), source="cache")

        async with self._lock:
            all_moods = await self._read(MOODS_KEY)
            all_moods[user_id] = [e.model_dump(mode="json") for e in entries]
            await self._write(MOODS_KEY, all_moods)
        return MoodSnapshot(entries=entries, source="remote")

    async def add_mood(self, user_id: str, score: Any, note: str = "") -> MoodEntry:
        """
        Log a new mood entry.

        Args:
            user_id: Owner of the entry
            score: Integer score between 1 and 10
            note: Free-form note

        Returns:
            The stored MoodEntry

        Raises:
            ValidationError: If the score is not an integer within 1-10
        """
        entry = MoodEntry(score=validate_mood_score(score), note=note or "")
        async with self._lock:
            all_moods = await self._read(MOODS_KEY)
            all_moods.setdefault(user_id, []).append(entry.model_dump(mode="json"))
            await self._write(MOODS_KEY, all_moods)
        return entry

    async def delete_mood(self, user_id: str, mood_id: str) -> None:
        """Remove one entry; unknown ids are ignored."""
        async with self._lock:
            all_moods = await self._read(MOODS_KEY)
            entries = all_moods.get(user_id, [])
            remaining = [m for m in entries if m.get("id") != mood_id]
            if len(remaining) == len(entries):
                return
            all_moods[user_id] = remaining
            await self._write(MOODS_KEY, all_moods)

    # MARK: - Preferences

    async def get_tone(self, user_id: str) -> Tone:
        value = (await self._read(TONES_KEY)).get(user_id)
        try:
            return Tone(value)
        except ValueError:
            return DEFAULT_TONE

    async def set_tone(self, user_id: str, tone: Tone) -> None:
        async with self._lock:
            tones = await self._read(TONES_KEY)
            tones[user_id] = Tone(tone).value
            await self._write(TONES_KEY, tones)


def validate_mood_score(score: Any) -> int:
    """Return ``score`` as an int, rejecting anything outside the 1-10 scale."""
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise ValidationError(f"Mood score must be a number, got {score!r}")
    if isinstance(score, float) and (not math.isfinite(score) or not score.is_integer()):
        raise ValidationError(f"Mood score must be a whole number, got {score!r}")
    value = int(score)
    if not MIN_MOOD_SCORE <= value <= MAX_MOOD_SCORE:
        raise ValidationError(
            f"Mood score must be between {MIN_MOOD_SCORE} and {MAX_MOOD_SCORE}, got {value}"
        )
    return value
