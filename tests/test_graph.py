"""End-to-end research sessions through the compiled graph, fully offline."""

import asyncio
import json

import pytest

from conftest import QUESTION, SCHEMA_MARKER, agent_answer, agent_reflect, agent_search, agent_visit, strict
from deepsearch import graph, search
from deepsearch.config import get_config
from deepsearch.models import AnswerAction, TrackerContext
from deepsearch.persistence import MemorySessionSink
from deepsearch.tracking import ActionTracker, TokenTracker

PARIS_URL = "https://en.wikipedia.org/wiki/Paris"
PARIS_TEXT = (
    "Paris is the capital and largest city of France. It has been the seat of the French "
    "government since the tenth century and hosts most national institutions."
)


def run(question=QUESTION, **kwargs):
    kwargs.setdefault("language_code", "en")
    kwargs.setdefault("sink", MemorySessionSink())
    return asyncio.run(graph.get_response(question, **kwargs))


@pytest.fixture
def paris_web(monkeypatch):
    def _search(query, provider=None, num=10):
        return [{"url": PARIS_URL, "title": "Paris", "description": "Paris is the capital of France."}]

    def _read(url, with_images=False):
        return {"url": url, "title": "Paris - Wikipedia", "content": PARIS_TEXT, "links": [], "images": []}

    monkeypatch.setattr(search, "search", _search)
    monkeypatch.setattr(search, "read_url", _read)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class TestGetResponse:
    def test_empty_question_is_rejected(self):
        with pytest.raises(ValueError):
            run("   ")

    def test_question_comes_from_last_message(self, fake_llm):
        fake_llm.script("AgentAction", agent_answer("Hello there!"))
        messages = [
            {"role": "system", "content": "ignored"},
            {"role": "user", "content": "earlier question"},
            {"role": "assistant", "content": "earlier answer"},
            {"role": "user", "content": [{"type": "text", "text": "Say hello"}]},
        ]
        result = run(None, messages=messages)
        assert result.result.answer == "Hello there!"
        agent_call = fake_llm.called("AgentAction")[0]
        assert agent_call["messages"][-1]["content"] == "Say hello"
        assert all(m["content"] != "ignored" for m in agent_call["messages"])

    def test_language_is_detected_when_not_given(self, fake_llm):
        fake_llm.script("LanguageDetection", {"lang_code": "de", "lang_style": "formal German"})
        fake_llm.script("AgentAction", agent_answer("Berlin."))
        asyncio.run(graph.get_response("Was ist die Hauptstadt?", sink=MemorySessionSink()))
        assert len(fake_llm.called("LanguageDetection")) == 1

    def test_urls_in_messages_seed_the_registry(self, fake_llm):
        fake_llm.script("AgentAction", agent_answer("Done."))
        result = run("Summarize https://example.com/article please")
        assert "https://example.com/article" in result.all_urls


# ---------------------------------------------------------------------------
# Loop scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_trivial_answer_on_first_step(self, fake_llm):
        fake_llm.script("AgentAction", agent_answer("Paris."))
        sink = MemorySessionSink()
        result = run(sink=sink)

        assert isinstance(result.result, AnswerAction)
        assert result.result.is_final
        assert result.result.md_answer == "Paris."
        assert fake_llm.called("StrictEvaluation") == []
        assert fake_llm.called("finalizer") == []
        assert [s["total_step"] for s in sink.snapshots] == [1]

    def test_search_visit_then_accepted_answer(self, fake_llm, paris_web):
        fake_llm.script(
            "AgentAction",
            agent_search("capital of france"),
            agent_visit(1),
            agent_answer("The capital of France is Paris."),
        )
        sink = MemorySessionSink()
        result = run(sink=sink)

        assert result.result.answer == "The capital of France is Paris."
        assert result.result.is_final
        assert result.read_urls == [PARIS_URL]
        assert len(fake_llm.called("StrictEvaluation")) == 1
        assert len(fake_llm.called("finalizer")) == 1
        assert [s["total_step"] for s in sink.snapshots] == [1, 2, 3]
        assert "capital of france" in sink.snapshots[-1]["queries"]

    def test_rejected_answer_is_analyzed_and_retried(self, fake_llm):
        fake_llm.script(
            "AgentAction",
            agent_answer("First try."),
            agent_reflect("Which river runs through the capital?"),
            agent_answer("The Seine."),
            agent_answer("Final answer."),
        )
        fake_llm.script("StrictEvaluation", strict(False, "For the best answer, you must name the city."), strict(True))
        sink = MemorySessionSink()
        result = run(no_direct_answer=True, sink=sink)

        assert result.result.answer == "Final answer."
        assert len(fake_llm.called("ErrorAnalysisSchema")) == 1
        knowledge = sink.snapshots[-1]["knowledge"]
        assert any("Why is the following answer bad" in k["question"] for k in knowledge)
        assert any(k["question"] == "Which river runs through the capital?" and k["answer"] == "The Seine."
                   for k in knowledge)
        last_agent_prompt = fake_llm.called("AgentAction")[-1]["messages"][-1]["content"]
        assert "<answer-requirements>" in last_agent_prompt
        assert "you must name the city" in last_agent_prompt

    def test_exhausted_attempts_fall_into_beast_mode(self, fake_llm):
        fake_llm.script("AgentAction", agent_answer("Weak answer."), agent_answer("Forced answer."))
        fake_llm.script("StrictEvaluation", strict(False))
        sink = MemorySessionSink()
        result = run(no_direct_answer=True, max_bad_attempts=1, sink=sink)

        assert result.result.answer == "Forced answer."
        assert result.result.is_final
        assert [c["role"] for c in fake_llm.called("AgentAction")] == ["agent", "agent_beast_mode"]
        assert len(sink.snapshots) == 2

    def test_unverifiable_answer_is_not_accepted(self, fake_llm):
        fake_llm.script("AgentAction", agent_answer("Unchecked guess."), agent_answer("Forced answer."))
        fake_llm.script("StrictEvaluation", RuntimeError("evaluator unavailable"))
        fake_llm.script("fallback", RuntimeError("evaluator unavailable"))
        result = run(no_direct_answer=True, max_bad_attempts=1)

        assert result.result.answer == "Forced answer."
        assert [c["role"] for c in fake_llm.called("AgentAction")] == ["agent", "agent_beast_mode"]

    def test_fresh_question_is_not_answered_on_the_first_step(self, fake_llm):
        def agent(messages):
            schema = json.loads(messages[0]["content"].rsplit(SCHEMA_MARKER, 1)[1])
            if "answer" in schema["properties"]:
                return agent_answer("Fresh answer.")
            return agent_answer("From memory.")

        fake_llm.script("AgentAction", agent)
        fake_llm.script("fallback", agent_answer("From memory."))
        fake_llm.script("QuestionEvaluation", {
            "think": "depends on current events",
            "needs_definitive": False,
            "needs_freshness": True,
            "needs_plurality": False,
            "needs_completeness": False,
        })
        fake_llm.script("FreshnessEvaluation", {
            "type": "freshness",
            "think": "recent enough",
            "freshness_analysis": {"days_ago": 1, "max_age_days": 30},
            "pass": True,
        })
        sink = MemorySessionSink()
        result = run(sink=sink)

        first_schema = sink.snapshots[0]["schema"]["properties"]
        assert "answer" not in first_schema
        assert "reflect" not in first_schema
        assert "search" in first_schema
        assert "not available at that step" in sink.snapshots[1]["prompt"]
        assert result.result.answer == "Fresh answer."
        assert [s["total_step"] for s in sink.snapshots] == [1, 2]
        assert len(fake_llm.called("FreshnessEvaluation")) == 1

    def test_gaps_are_visited_in_rotation(self, fake_llm):
        fake_llm.script(
            "AgentAction",
            agent_reflect("Who founded Paris?", "When was Paris founded?"),
            agent_answer("Around 250 BC."),
            agent_answer("The Parisii."),
            agent_answer("Paris was founded around 250 BC by the Parisii."),
        )
        result = run()

        asked = [c["messages"][-1]["content"] for c in fake_llm.called("AgentAction")]
        assert asked == [QUESTION, "When was Paris founded?", "Who founded Paris?", QUESTION]
        assert result.result.answer == "Paris was founded around 250 BC by the Parisii."

    def test_spent_budget_falls_into_beast_mode(self, fake_llm):
        fake_llm.script("AgentAction", agent_search("paris"), agent_answer("Best effort."))
        result = run(token_budget=50)

        assert result.result.answer == "Best effort."
        assert [c["role"] for c in fake_llm.called("AgentAction")] == ["agent", "agent_beast_mode"]

    def test_step_cap_falls_into_beast_mode(self, fake_llm, monkeypatch):
        monkeypatch.setattr(get_config(), "max_steps", 1)
        fake_llm.script("AgentAction", agent_search("paris"), agent_answer("Capped."))
        sink = MemorySessionSink()
        result = run(sink=sink)

        assert result.result.answer == "Capped."
        assert [s["total_step"] for s in sink.snapshots] == [1, 2]

    def test_team_mode_aggregates_sub_sessions(self, fake_llm):
        def agent(messages):
            question = messages[-1]["content"]
            if question.startswith("Sub-problem"):
                return agent_answer(f"Findings for {question}.")
            return agent_search("overview")

        fake_llm.script("AgentAction", agent)
        fake_llm.script("ResearchPlan", {
            "think": "history and economy are orthogonal",
            "subproblems": ["Sub-problem one: history", "Sub-problem two: economy"],
        })
        result = run("Tell me about Paris", team_size=2)

        answer = result.result
        assert answer.is_aggregated
        assert answer.is_final
        assert "Findings for Sub-problem one: history." in answer.answer
        assert "Findings for Sub-problem two: economy." in answer.answer
        assert len(fake_llm.called("ResearchPlan")) == 1


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------


class TestTracking:
    def test_action_events_reach_listeners(self, fake_llm, paris_web):
        fake_llm.script("AgentAction", agent_search("capital of france"), agent_visit(1), agent_answer("Paris."))
        events = []
        context = TrackerContext(token_tracker=TokenTracker(), action_tracker=ActionTracker())
        context.action_tracker.add_listener(events.append)
        result = run(existing_context=context)

        steps = [e for e in events if e["type"] == "action" and e["total_step"]]
        assert [e["total_step"] for e in steps][-1] == 3
        assert any(e["type"] == "think" for e in events)
        assert result.context.token_tracker is context.token_tracker
        assert context.token_tracker.get_total_usage().total_tokens > 0
