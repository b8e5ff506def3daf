"""
End-to-end tests for the Mind Ease API endpoints.

These tests verify the complete HTTP API functionality including accounts,
streamed chat turns over Server-Sent Events, the mood journal and voice
transcript handling.
"""

import json

import pytest
from fastapi.testclient import TestClient

from mind_ease.config import Settings
from mind_ease.server import create_app
from mind_ease.store import PersistenceGateway


def read_sse(response) -> list[tuple[str, dict]]:
    """Collect (event, data) pairs from a streamed SSE response."""
    events = []
    event = "message"
    for line in response.iter_lines():
        if line.startswith("event: "):
            event = line[len("event: "):]
        elif line.startswith("data: "):
            events.append((event, json.loads(line[len("data: "):])))
            event = "message"
    return events


@pytest.fixture
def client(gemini):
    app = create_app(
        settings=Settings(api_key=gemini.api_key),
        gateway=PersistenceGateway(),
        session_factory=gemini.session,
    )
    with TestClient(app) as client:
        yield client


def sign_in(client, email="a@x.com", password="secret1", name="Ann") -> dict[str, str]:
    client.post("/auth/signup", json={"email": email, "password": password, "name": name})
    response = client.post("/auth/signin", json={"email": email, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


# MARK: - Accounts


class TestAuthAPI:
    def test_account_workflow(self, client):
        response = client.post(
            "/auth/signup", json={"email": "a@x.com", "password": "secret1", "name": "Ann"}
        )
        assert response.status_code == 201
        assert response.json()["user"]["name"] == "Ann"

        duplicate = client.post(
            "/auth/signup", json={"email": "a@x.com", "password": "secret1", "name": "Ann"}
        )
        assert duplicate.status_code == 409

        wrong = client.post("/auth/signin", json={"email": "a@x.com", "password": "wrong"})
        assert wrong.status_code == 401

        ok = client.post("/auth/signin", json={"email": "a@x.com", "password": "secret1"})
        assert ok.status_code == 200
        headers = {"Authorization": f"Bearer {ok.json()['token']}"}

        me = client.get("/auth/me", headers=headers)
        assert me.json()["user"]["name"] == "Ann"

        assert client.post("/auth/signout", headers=headers).status_code == 204
        assert client.get("/auth/me", headers=headers).status_code == 401

    def test_requests_without_token_are_rejected(self, client):
        assert client.get("/chat/messages").status_code == 401
        assert client.get("/moods", headers={"Authorization": "Bearer nope"}).status_code == 401

    def test_blank_sign_up_is_rejected(self, client):
        response = client.post("/auth/signup", json={"email": "", "password": "x", "name": "A"})
        assert response.status_code == 422


# MARK: - Chat


class TestChatAPI:
    def test_streamed_turn(self, client, gemini):
        headers = sign_in(client)
        gemini.reply("You are ", "not alone.")

        initial = client.get("/chat/messages", headers=headers).json()["messages"]
        assert [m["id"] for m in initial] == ["welcome"]

        with client.stream(
            "POST", "/chat/messages", json={"text": "I feel lonely"}, headers=headers
        ) as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            events = read_sse(response)

        names = [name for name, _ in events]
        assert names[-1] == "done"
        messages = [data for name, data in events if name == "message"]
        assert messages[0]["role"] == "user"
        assert [m["text"] for m in messages[1:]] == ["", "You are ", "You are not alone."]

        # Stored tone preference is applied to the turn
        assert gemini.requests[0]["contents"][-1]["parts"][0]["text"].startswith(
            "(Please respond in a empathetic tone)"
        )

        transcript = client.get("/chat/messages", headers=headers).json()["messages"]
        assert [m["role"] for m in transcript] == ["model", "user", "model"]

    def test_empty_message_is_rejected(self, client):
        headers = sign_in(client)
        response = client.post("/chat/messages", json={"text": "   "}, headers=headers)
        assert response.status_code == 422

    def test_tone_preference(self, client, gemini):
        headers = sign_in(client)
        assert client.get("/chat/tone", headers=headers).json() == {"tone": "Empathetic"}

        response = client.put("/chat/tone", json={"tone": "Casual"}, headers=headers)
        assert response.json() == {"tone": "Casual"}

        with client.stream(
            "POST", "/chat/messages", json={"text": "hey"}, headers=headers
        ) as response:
            read_sse(response)
        assert "casual tone" in gemini.requests[0]["contents"][-1]["parts"][0]["text"]

        with client.stream(
            "POST", "/chat/messages", json={"text": "hey", "tone": "Formal"}, headers=headers
        ) as response:
            read_sse(response)
        assert "formal tone" in gemini.requests[1]["contents"][-1]["parts"][0]["text"]

    def test_rate_limit_is_reported_in_transcript(self, client, gemini):
        headers = sign_in(client)
        gemini.fail(429, "Too many requests")

        with client.stream(
            "POST", "/chat/messages", json={"text": "hello"}, headers=headers
        ) as response:
            events = read_sse(response)

        final = [data for name, data in events if name == "message"][-1]
        assert final["role"] == "model"
        assert "temporary limit" in final["text"]
        assert events[-1][0] == "done"

    def test_clear_and_export(self, client, gemini):
        headers = sign_in(client)
        gemini.reply("Noted.")
        with client.stream(
            "POST", "/chat/messages", json={"text": "remember this"}, headers=headers
        ) as response:
            read_sse(response)

        export = client.get("/chat/export", headers=headers)
        assert export.status_code == 200
        assert "You: remember this" in export.text
        assert "mind-ease-chat-ann-" in export.headers["content-disposition"]

        cleared = client.delete("/chat/messages", headers=headers).json()["messages"]
        assert [m["id"] for m in cleared] == ["welcome"]

        # A second session of the same user sees the cleared history
        other = sign_in(client)
        transcript = client.get("/chat/messages", headers=other).json()["messages"]
        assert [m["id"] for m in transcript] == ["welcome"]

    def test_signing_out_one_device_keeps_the_other_conversation(self, gemini):
        created = []

        def session_factory():
            session = gemini.session()
            created.append(session)
            return session

        app = create_app(
            settings=Settings(api_key=gemini.api_key),
            gateway=PersistenceGateway(),
            session_factory=session_factory,
        )
        with TestClient(app) as client:
            phone = sign_in(client)
            laptop = sign_in(client)
            gemini.reply("First answer")
            with client.stream(
                "POST", "/chat/messages", json={"text": "one"}, headers=laptop
            ) as response:
                read_sse(response)

            assert client.post("/auth/signout", headers=phone).status_code == 204

            with client.stream(
                "POST", "/chat/messages", json={"text": "two"}, headers=laptop
            ) as response:
                read_sse(response)

        assert len(created) == 1
        assert created[0].history[-2]["parts"][0]["text"] == "two"
        assert len(gemini.requests[-1]["contents"]) == 3


# MARK: - Moods


class TestMoodAPI:
    def test_mood_workflow(self, client):
        headers = sign_in(client)

        created = client.post("/moods", json={"score": 7, "note": "felt okay"}, headers=headers)
        assert created.status_code == 201
        mood = created.json()["mood"]
        assert (mood["score"], mood["note"]) == (7, "felt okay")

        listed = client.get("/moods", headers=headers).json()
        assert listed["source"] == "cache"
        assert [m["id"] for m in listed["moods"]] == [mood["id"]]

        summary = client.get("/moods/summary", headers=headers).json()
        assert summary["average"] == 7.0
        assert summary["count"] == 1
        assert len(summary["week"]) == 7
        assert summary["week"][-1]["score"] == 7

        assert client.delete(f"/moods/{mood['id']}", headers=headers).status_code == 204
        assert client.delete(f"/moods/{mood['id']}", headers=headers).status_code == 204
        assert client.get("/moods", headers=headers).json()["moods"] == []

    @pytest.mark.parametrize("score", [0, 11, 6.5])
    def test_out_of_range_score_is_rejected(self, client, score):
        headers = sign_in(client)
        response = client.post("/moods", json={"score": score}, headers=headers)
        assert response.status_code == 422
        assert client.get("/moods", headers=headers).json()["moods"] == []


# MARK: - Voice


class TestVoiceAPI:
    def test_clear_chat_command(self, client, gemini):
        headers = sign_in(client)
        with client.stream(
            "POST", "/chat/messages", json={"text": "hello"}, headers=headers
        ) as response:
            read_sse(response)

        response = client.post(
            "/voice/transcript",
            json={"segments": [{"text": "Clear chat please"}], "current_input": "draft"},
            headers=headers,
        )

        assert response.json() == {"action": "clear_chat", "input_text": "draft"}
        transcript = client.get("/chat/messages", headers=headers).json()["messages"]
        assert [m["id"] for m in transcript] == ["welcome"]

    def test_open_timer_and_dictation(self, client):
        headers = sign_in(client)

        timer = client.post(
            "/voice/transcript",
            json={"segments": [{"text": "open timer now"}]},
            headers=headers,
        )
        assert timer.json()["action"] == "open_timer"

        dictation = client.post(
            "/voice/transcript",
            json={
                "segments": [
                    {"text": "slept badly", "is_final": True},
                    {"text": "ignored", "is_final": False},
                ],
                "current_input": "I",
            },
            headers=headers,
        )
        assert dictation.json() == {"action": "insert", "input_text": "I slept badly"}

    def test_error_notice(self, client):
        response = client.post("/voice/error", json={"code": "no-speech"})
        assert response.json()["soft"] is True
        assert "No speech detected" in response.json()["message"]
