"""Tests for LLM-backed extraction.

Validates:
- Replies are parsed into event parameters, fenced or bare
- Transport errors and 429/5xx responses are retried
- Client errors and exhausted retries surface as ExtractionError
"""

from __future__ import annotations

import json
from datetime import date, time

import httpx
import pytest
from tenacity import wait_none

from concierge.core.errors import ExtractionError
from concierge.integrations.extraction import LLMExtractionService

REPLY = {"title": "Dentist", "date": "2026-03-06", "time": "09:30", "duration": 30, "location": "Clinic"}


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


class ScriptedLLM:
    """Replays one outcome per request; the last outcome repeats."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("upstream went away", request=request)
        return outcome


@pytest.fixture
async def make_service():
    clients: list[httpx.AsyncClient] = []

    def _make(llm: ScriptedLLM) -> LLMExtractionService:
        client = httpx.AsyncClient(base_url="https://llm.test/v1", transport=httpx.MockTransport(llm))
        clients.append(client)
        return LLMExtractionService(model="test-model", client=client, retry_wait=wait_none())

    yield _make
    for client in clients:
        await client.aclose()


class TestLLMExtraction:
    async def test_parses_bare_json_reply(self, make_service):
        llm = ScriptedLLM(_completion(json.dumps(REPLY)))
        result = await make_service(llm).extract("Book me a dentist on Friday at 9:30")

        assert result.title == "Dentist"
        assert result.date == date(2026, 3, 6)
        assert result.time == time(9, 30)
        assert result.duration == 30
        body = json.loads(llm.requests[0].content)
        assert body["model"] == "test-model"
        assert body["messages"][-1]["content"] == "Book me a dentist on Friday at 9:30"
        assert llm.requests[0].url.path == "/v1/chat/completions"

    async def test_parses_fenced_reply(self, make_service):
        llm = ScriptedLLM(_completion("Sure!\n```json\n" + json.dumps(REPLY) + "\n```"))
        result = await make_service(llm).extract("dentist friday")
        assert result.location == "Clinic"

    async def test_connect_error_retried(self, make_service):
        llm = ScriptedLLM(httpx.ConnectError, _completion(json.dumps(REPLY)))
        result = await make_service(llm).extract("dentist friday")
        assert result.title == "Dentist"
        assert len(llm.requests) == 2

    async def test_dropped_connection_retried_then_gives_up(self, make_service):
        llm = ScriptedLLM(httpx.RemoteProtocolError)
        with pytest.raises(ExtractionError, match="unavailable"):
            await make_service(llm).extract("dentist friday")
        assert len(llm.requests) == 3

    async def test_server_error_retried(self, make_service):
        llm = ScriptedLLM(httpx.Response(503), _completion(json.dumps(REPLY)))
        result = await make_service(llm).extract("dentist friday")
        assert result.title == "Dentist"
        assert len(llm.requests) == 2

    async def test_client_error_not_retried(self, make_service):
        llm = ScriptedLLM(httpx.Response(401))
        with pytest.raises(ExtractionError):
            await make_service(llm).extract("dentist friday")
        assert len(llm.requests) == 1

    async def test_empty_text_rejected_without_request(self, make_service):
        llm = ScriptedLLM(_completion(json.dumps(REPLY)))
        with pytest.raises(ExtractionError):
            await make_service(llm).extract("   ")
        assert llm.requests == []
