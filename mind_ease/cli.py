"""
Command-line interface tools for the Mind Ease service.
"""

import asyncio
import json
import os
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

import httpx
import typer
from httpx_sse import ServerSentEvent, aconnect_sse

from .models import Message, MoodEntry, Tone

DEFAULT_BASE_URL = "http://localhost:8000"
TOKEN_ENV = "MIND_EASE_TOKEN"

app = typer.Typer(help="Mind Ease CLI tools")

BaseUrlOption = typer.Option(
    DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the Mind Ease service"
)
TokenOption = typer.Option(
    None, "--token", "-t", envvar=TOKEN_ENV, help="Session token from `signin`"
)


# MARK: - Commands


@app.command()
def signup(
    email: str = typer.Argument(..., help="Account email"),
    name: str = typer.Argument(..., help="Display name"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    base_url: str = BaseUrlOption,
) -> None:
    """Create an account."""

    async def _signup() -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{base_url}/auth/signup",
                json={"email": email, "password": password, "name": name},
            )
            response.raise_for_status()
            print(f"Account created for {response.json()['user']['name']}")

    _run_with_error_handling(_signup(), base_url)


@app.command()
def signin(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    base_url: str = BaseUrlOption,
) -> None:
    """Sign in and print a session token."""

    async def _signin() -> None:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{base_url}/auth/signin", json={"email": email, "password": password}
            )
            response.raise_for_status()
            result = response.json()
            print(f"Signed in as {result['user']['name']}")
            print(f"export {TOKEN_ENV}={result['token']}")

    _run_with_error_handling(_signin(), base_url)


@app.command()
def chat(
    text: str = typer.Argument(..., help="What you want to say"),
    tone: Tone | None = typer.Option(None, "--tone", help="Tone for this reply"),
    token: str | None = TokenOption,
    base_url: str = BaseUrlOption,
) -> None:
    """Send a message and stream the reply."""
    headers = _auth(token)

    async def _chat() -> None:
        payload: dict[str, Any] = {"text": text}
        if tone is not None:
            payload["tone"] = tone.value

        printed = 0
        reply: Message | None = None
        async with httpx.AsyncClient(timeout=None, headers=headers) as client:
            async with aconnect_sse(
                client, "POST", f"{base_url}/chat/messages", json=payload
            ) as event_source:
                event_source.response.raise_for_status()
                async for sse in event_source.aiter_sse():
                    message = _handle_sse_event(sse)
                    if message is None or message.role != "model":
                        continue
                    # Each event carries the whole reply so far
                    print(message.text[printed:], end="", flush=True)
                    printed = len(message.text)
                    reply = message
        if printed:
            print()
        for chunk in (reply.grounding_chunks if reply else None) or []:
            if chunk.web:
                print(f"  source: {chunk.web.title or chunk.web.uri} <{chunk.web.uri}>")

    _run_with_error_handling(_chat(), base_url)


@app.command()
def log_mood(
    score: int = typer.Argument(..., min=1, max=10, help="Mood score from 1 to 10"),
    note: str = typer.Argument("", help="Optional note"),
    token: str | None = TokenOption,
    base_url: str = BaseUrlOption,
) -> None:
    """Log how you are feeling."""
    headers = _auth(token)

    async def _log_mood() -> None:
        async with httpx.AsyncClient(headers=headers) as client:
            response = await client.post(
                f"{base_url}/moods", json={"score": score, "note": note}
            )
            response.raise_for_status()
            mood = MoodEntry.model_validate(response.json()["mood"])
            print(f"Logged {_format_mood(mood)}")

    _run_with_error_handling(_log_mood(), base_url)


@app.command()
def moods(
    token: str | None = TokenOption,
    base_url: str = BaseUrlOption,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output raw JSON"),
) -> None:
    """List logged moods, newest first."""
    headers = _auth(token)

    async def _moods() -> None:
        async with httpx.AsyncClient(headers=headers) as client:
            response = await client.get(f"{base_url}/moods")
            response.raise_for_status()
            result = response.json()

            if json_output:
                print(json.dumps(result, indent=2))
                return

            entries = [MoodEntry.model_validate(m) for m in result["moods"]]
            if not entries:
                print("No moods logged")
            for entry in entries:
                print(_format_mood(entry))

    _run_with_error_handling(_moods(), base_url)


@app.command()
def serve() -> None:
    """Run the API server (configured through MIND_EASE_* variables)."""
    from .server import main

    main()


# MARK: - Private Helpers


def _auth(token: str | None) -> dict[str, str]:
    token = token or os.environ.get(TOKEN_ENV)
    if not token:
        print(f"Error: no session token; run `signin` and set {TOKEN_ENV}")
        raise typer.Exit(1)
    return {"Authorization": f"Bearer {token}"}


def _format_mood(mood: MoodEntry) -> str:
    """Format a mood entry with its timestamp."""
    dt = datetime.fromtimestamp(mood.timestamp)
    line = f"{dt.strftime('%Y-%m-%d %H:%M')} > {mood.score}/10"
    return f"{line} {mood.note}" if mood.note else line


def _handle_sse_event(sse: ServerSentEvent) -> Message | None:
    """Handle a single SSE event; returns the message it carries, if any."""
    try:
        if sse.event == "error":
            error_data = json.loads(sse.data)
            print(f"Server error: {error_data.get('error', 'Unknown error')}")
            return None
        if sse.event != "message":
            return None
        return Message.model_validate(json.loads(sse.data))

    except json.JSONDecodeError as e:
        print(f"Warning: Could not parse SSE data: {sse.data} - {e}")
    except Exception as e:
        print(f"Warning: Error processing message data: {e}")
    return None


def _run_with_error_handling(coro: Coroutine[Any, Any, Any], base_url: str) -> None:
    """Run an async coroutine with standardized error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        print("\nStopped")
        raise typer.Exit(0)
    except httpx.ConnectError:
        print(f"Error: Could not connect to {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        print(f"Error: HTTP {e.response.status_code}")
        raise typer.Exit(1)
    except Exception as e:
        error_msg = str(e) if str(e) else f"Unknown error of type {type(e).__name__}"
        print(f"Error: {error_msg}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
