"""HTTP surface: blocking and streaming research endpoints."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from deepsearch import graph, server
from deepsearch.models import AnswerAction, ResearchResult, SearchAction, TokenUsage, TrackerContext
from deepsearch.search import SearchUnauthorizedError
from deepsearch.tracking import ActionTracker, TokenTracker


@pytest.fixture
def client():
    return TestClient(server.app)


def install(monkeypatch, error=None):
    """Replace the research loop with a scripted run; returns the kwargs it saw."""
    seen = {}

    async def _get_response(existing_context=None, sink=None, **kwargs):
        seen.update(kwargs)
        seen["sink"] = sink
        context = existing_context or TrackerContext(token_tracker=TokenTracker(), action_tracker=ActionTracker())
        context.action_tracker.track_action({
            "total_step": 1,
            "this_step": SearchAction(think="Looking it up.", search_requests=["capital of france"]),
            "gaps": [kwargs.get("question") or ""],
        })
        context.token_tracker.track_usage("agent", TokenUsage(prompt_tokens=15, completion_tokens=5, total_tokens=20))
        if error is not None:
            raise error
        answer = AnswerAction(think="Found it.", answer="Paris.", md_answer="Paris.", is_final=True)
        return ResearchResult(
            result=answer,
            context=context,
            visited_urls=["https://en.wikipedia.org/wiki/Paris"],
            read_urls=["https://en.wikipedia.org/wiki/Paris"],
            all_urls=["https://en.wikipedia.org/wiki/Paris"],
        )

    monkeypatch.setattr(graph, "get_response", _get_response)
    return seen


def sse_events(text):
    return [
        json.loads(block[len("data: "):])
        for block in text.split("\n\n")
        if block.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# POST /api/research
# ---------------------------------------------------------------------------


class TestResearch:
    def test_returns_answer_and_usage(self, client, monkeypatch):
        seen = install(monkeypatch)
        resp = client.post("/api/research", json={"query": "What is the capital of France?", "max_ref": 5})

        assert resp.status_code == 200
        body = resp.json()
        assert body["answer"] == "Paris."
        assert body["md_answer"] == "Paris."
        assert body["visited_urls"] == ["https://en.wikipedia.org/wiki/Paris"]
        assert body["usage"]["total_tokens"] == 20
        assert body["run_id"]
        assert seen["question"] == "What is the capital of France?"
        assert seen["max_ref"] == 5
        assert seen["messages"] is None

    def test_messages_are_forwarded(self, client, monkeypatch):
        seen = install(monkeypatch)
        client.post("/api/research", json={"messages": [{"role": "user", "content": "hi"}]})
        assert seen["question"] is None
        assert seen["messages"] == [{"role": "user", "content": "hi"}]

    def test_question_is_required(self, client, monkeypatch):
        install(monkeypatch)
        assert client.post("/api/research", json={}).status_code == 422
        assert client.post("/api/research/stream", json={}).status_code == 422

    def test_unauthorized_search_provider(self, client, monkeypatch):
        install(monkeypatch, error=SearchUnauthorizedError("serper rejected the key"))
        resp = client.post("/api/research", json={"query": "q"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# POST /api/research/stream
# ---------------------------------------------------------------------------


class TestStream:
    def test_progress_then_final_result(self, client, monkeypatch):
        install(monkeypatch)
        resp = client.post("/api/research/stream", json={"query": "What is the capital of France?"})

        assert resp.headers["content-type"].startswith("text/event-stream")
        events = sse_events(resp.text)
        types = [e["type"] for e in events]
        assert types[0] == "phase-update"
        assert types[-2:] == ["final-result", "complete"]

        action = next(e for e in events if e["type"] == "action")
        assert action["action"] == "search"
        assert action["total_step"] == 1
        assert action["detail"]["search_requests"] == ["capital of france"]

        usage = next(e for e in events if e["type"] == "usage")
        assert usage["tool"] == "agent"

        final = events[-2]
        assert final["answer"] == "Paris."
        assert events[-1]["usage"]["total_tokens"] == 20

    def test_failure_becomes_error_event(self, client, monkeypatch):
        install(monkeypatch, error=RuntimeError("429 rate limit exceeded"))
        events = sse_events(client.post("/api/research/stream", json={"query": "q"}).text)

        assert events[-1]["type"] == "error"
        assert events[-1]["phase"] == "research"
        assert events[-1]["hint"].startswith("Rate limited")
        assert "final-result" not in [e["type"] for e in events]

    def test_closing_the_stream_cancels_the_run(self, monkeypatch):
        async def scenario():
            cancelled = asyncio.Event()

            async def _get_response(existing_context=None, sink=None, **kwargs):
                existing_context.action_tracker.track_action({
                    "total_step": 1,
                    "this_step": SearchAction(think="Looking it up.", search_requests=["paris"]),
                    "gaps": [],
                })
                try:
                    await asyncio.sleep(3600)
                except asyncio.CancelledError:
                    cancelled.set()
                    raise

            monkeypatch.setattr(graph, "get_response", _get_response)
            stream = server.research_stream_generator(server.ResearchRequest(query="q"), "run-1")
            first = await stream.__anext__()
            second = await stream.__anext__()
            await stream.aclose()
            await asyncio.wait_for(cancelled.wait(), 1)
            return first, second

        first, second = asyncio.run(scenario())
        assert '"phase-update"' in first
        assert '"action"' in second


# ---------------------------------------------------------------------------
# helpers and info endpoints
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_serialize_event(self):
        assert server.serialize_event("log", {"message": "hi"}) == 'data: {"type": "log", "message": "hi"}\n\n'

    @pytest.mark.parametrize("message, hint", [
        ("Error code: 402 payment required", "API credits"),
        ("Serper search unauthorized", "Search provider"),
        ("401 Unauthorized", "Invalid API key"),
        ("model not found", "Model not found"),
        ("something odd", ""),
    ])
    def test_error_hints(self, message, hint):
        assert server._get_error_hint(message).startswith(hint)


class TestInfo:
    def test_health(self, client, monkeypatch):
        monkeypatch.setenv("SERPER_API_KEY", "k")
        body = client.get("/api/health").json()
        assert body["status"] == "healthy"
        assert body["version"] == server.VERSION
        assert body["env_check"]["serper_key"] is True
        assert body["env_check"]["supabase"] is False

    def test_config_has_no_secrets(self, client):
        body = client.get("/api/config").json()
        assert "auto" in body["search_providers"]
        assert "gemini" in body["available_models"]
        assert "key" not in json.dumps(body).lower()
