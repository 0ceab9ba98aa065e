import json
import re
import threading

import pytest

from deepsearch import dedup, llm, search
from deepsearch.config import get_config
from deepsearch.executor import Session
from deepsearch.llm import ObjectGenerator
from deepsearch.models import TokenUsage, TrackerContext
from deepsearch.persistence import MemorySessionSink
from deepsearch.providers.base import ChatResponse
from deepsearch.schemas import SchemaBuilder
from deepsearch.tracking import ActionTracker, TokenTracker

SCHEMA_MARKER = "conforms to this JSON schema:\n"
QUESTION = "What is the capital of France?"


def schema_title(messages):
    system = messages[0]["content"] if messages and messages[0]["role"] == "system" else ""
    idx = system.rfind(SCHEMA_MARKER)
    if idx == -1:
        return None
    try:
        return json.loads(system[idx + len(SCHEMA_MARKER):]).get("title")
    except json.JSONDecodeError:
        return None


class FakeLLM:
    """Stands in for ``llm._chat``.

    Responses are scripted per schema title (``AgentAction``,
    ``StrictEvaluation``...) or per role for free-text and fallback calls.
    Each scripted list is consumed in order and its last entry repeats.
    An entry may be a dict, a raw string, an exception or a callable taking
    the messages.
    """

    def __init__(self):
        self.scripts = {}
        self.calls = []
        self._lock = threading.Lock()

    def script(self, key, *responses):
        self.scripts[key] = list(responses)
        return self

    def called(self, key):
        return [c for c in self.calls if c["title"] == key or c["role"] == key]

    def __call__(self, role, messages, json_mode=True, max_retries=3):
        title = schema_title(messages) if json_mode else None
        key = title if title in self.scripts else role
        with self._lock:
            self.calls.append({"role": role, "title": title, "messages": messages})
            queue = self.scripts.get(key)
            if not queue:
                raise RuntimeError(f"no scripted response for {key}")
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response):
            response = response(messages)
        if isinstance(response, Exception):
            raise response
        text = response if isinstance(response, str) else json.dumps(response)
        return ChatResponse(text=text, usage=TokenUsage(prompt_tokens=10, completion_tokens=10, total_tokens=20))


def agent_answer(text, think="I know this."):
    return {"think": think, "action": "answer", "answer": {"answer": text}}


def agent_search(*queries, think="I need to look this up."):
    return {"think": think, "action": "search", "search": {"search_requests": list(queries)}}


def agent_visit(*indices, think="Reading the best source."):
    return {"think": think, "action": "visit", "visit": {"url_targets": list(indices)}}


def agent_reflect(*questions, think="Some gaps remain."):
    return {"think": think, "action": "reflect", "reflect": {"questions_to_answer": list(questions)}}


def strict(passed, plan="For the best answer, you must cite primary sources."):
    return {"type": "strict", "think": "ok" if passed else "too thin", "improvement_plan": plan, "pass": passed}


@pytest.fixture(autouse=True)
def offline(monkeypatch):
    monkeypatch.setattr(get_config(), "step_sleep", 0)
    monkeypatch.setattr(search, "search", lambda query, provider=None, num=10: [])

    def _no_read(url, with_images=False):
        raise RuntimeError(f"network disabled in tests: {url}")

    def _no_embeddings(texts):
        raise RuntimeError("embeddings disabled in tests")

    monkeypatch.setattr(search, "read_url", _no_read)
    monkeypatch.setattr(search, "get_last_modified", lambda url: None)
    monkeypatch.setattr(dedup, "_embed_sync", _no_embeddings)
    for var in ("SUPABASE_URL", "SUPABASE_KEY"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def fake_llm(monkeypatch):
    fake = FakeLLM()
    fake.script("LanguageDetection", {"lang_code": "en", "lang_style": "formal English"})
    fake.script("QuestionEvaluation", {
        "think": "simple fact",
        "needs_definitive": False,
        "needs_freshness": False,
        "needs_plurality": False,
        "needs_completeness": False,
    })
    fake.script("DefinitiveEvaluation", {"type": "definitive", "think": "clear", "pass": True})
    fake.script("StrictEvaluation", strict(True))
    fake.script("ErrorAnalysisSchema", {
        "recap": "I answered too early.",
        "blame": "The first answer step.",
        "improvement": "Search before answering.",
    })
    fake.script("QueryRewrite", {"think": "nothing new", "queries": []})
    fake.script("SerpClusters", {"think": "no clusters", "clusters": []})
    fake.script("finalizer", lambda messages: messages[-1]["content"])
    monkeypatch.setattr(llm, "_chat", fake)
    return fake


def _bag_of_words(texts):
    vectors = []
    for text in texts:
        vec = [0.0] * 256
        for word in re.findall(r"\w+", text.lower()):
            vec[sum(ord(c) for c in word) % 256] += 1.0
        vectors.append(vec)
    return vectors


@pytest.fixture
def embedder(monkeypatch):
    monkeypatch.setattr(dedup, "_embed_sync", _bag_of_words)
    return _bag_of_words


@pytest.fixture
def make_session():
    def _make(question=QUESTION, **kwargs):
        tracker = TokenTracker(kwargs.pop("token_budget", 1_000_000))
        context = TrackerContext(token_tracker=tracker, action_tracker=ActionTracker())
        return Session(
            question=question,
            messages=[{"role": "user", "content": question}],
            context=context,
            generator=ObjectGenerator(tracker),
            schemas=SchemaBuilder(),
            sink=MemorySessionSink(),
            token_budget=tracker.budget,
            **kwargs,
        )

    return _make
