"""
Shared test doubles.

``FakeGemini`` stands in for the generative-language API behind an
``httpx.MockTransport``: queued replies are served as SSE streams, queued
failures as JSON error responses.
"""

import json
from collections import deque

import httpx
import pytest

from mind_ease.gemini import GenerativeChatSession

TEST_API_KEY = "test-key-0123456789"


class FakeGemini:
    api_key = TEST_API_KEY

    def __init__(self) -> None:
        self._queue: deque = deque()
        self.requests: list[dict] = []
        self.urls: list[httpx.URL] = []
        self.headers: list[httpx.Headers] = []

    def reply(self, *texts: str, grounding: list[dict] | None = None) -> None:
        """Queue a streamed reply made of the given text chunks."""
        self._queue.append(("reply", texts, grounding))

    def fail(self, status_code: int, message: str, status: str = "") -> None:
        """Queue an HTTP error response."""
        self._queue.append(("fail", status_code, message, status))

    def raw(self, *data: str) -> None:
        """Queue a 200 stream whose events carry the given data lines verbatim."""
        self._queue.append(("raw", data))

    def disconnect(self) -> None:
        """Queue a connection failure."""
        self._queue.append(("disconnect",))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.read()))
        self.urls.append(request.url)
        self.headers.append(request.headers)

        item = self._queue.popleft() if self._queue else ("reply", ("Hello!",), None)
        if item[0] == "disconnect":
            raise httpx.ConnectError("Connection refused", request=request)
        if item[0] == "raw":
            return self._stream(f"data: {data}\n\n" for data in item[1])
        if item[0] == "fail":
            _, status_code, message, status = item
            return httpx.Response(
                status_code,
                json={"error": {"code": status_code, "message": message, "status": status}},
            )

        _, texts, grounding = item
        events = []
        for index, text in enumerate(texts):
            candidate: dict = {"content": {"role": "model", "parts": [{"text": text}]}}
            if grounding and index == len(texts) - 1:
                candidate["groundingMetadata"] = {"groundingChunks": grounding}
            events.append(f"data: {json.dumps({'candidates': [candidate]})}\n\n")
        return self._stream(events)

    @staticmethod
    def _stream(events) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content="".join(events).encode("utf-8"),
        )

    def session(self, api_key: str | None = TEST_API_KEY, **kwargs) -> GenerativeChatSession:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return GenerativeChatSession(api_key, client=client, **kwargs)


@pytest.fixture
def gemini() -> FakeGemini:
    return FakeGemini()
