"""Structured generation and its recovery tiers."""

import asyncio

import pytest
from pydantic import BaseModel

from deepsearch.llm import (
    MAX_FAILED_OUTPUT,
    NoObjectGeneratedError,
    ObjectGenerator,
    _extract_json,
    _failed_output_for_fallback,
    parse_tolerant,
)
from deepsearch.tracking import TokenTracker


class Pet(BaseModel):
    name: str
    age: int


def generate(generator, **kwargs):
    return asyncio.run(generator.generate_object("agent", Pet, system="Describe a pet.", prompt="Go", **kwargs))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestParsing:
    def test_extract_json_strips_fences(self):
        assert _extract_json('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_extract_json_finds_embedded_object(self):
        assert _extract_json('Sure! {"a": 1} hope that helps') == '{"a": 1}'

    def test_parse_tolerant_accepts_hjson(self):
        assert parse_tolerant("{\n  name: Rex\n  age: 3\n}") == {"name": "Rex", "age": 3}

    def test_parse_tolerant_rejects_non_objects(self):
        with pytest.raises(ValueError):
            parse_tolerant("[1, 2, 3]")

    def test_fallback_output_is_cut_before_url_fields(self):
        text = '{"answer": "x", "url": "https://a.com"}'
        assert _failed_output_for_fallback(text) == '{"answer": "x", '

    def test_fallback_output_is_capped(self):
        assert len(_failed_output_for_fallback("x" * (MAX_FAILED_OUTPUT * 2))) == MAX_FAILED_OUTPUT


# ---------------------------------------------------------------------------
# Recovery tiers
# ---------------------------------------------------------------------------


class TestGenerateObject:
    def test_valid_output_is_returned_and_charged(self, fake_llm):
        fake_llm.script("Pet", {"name": "Rex", "age": 3})
        tracker = TokenTracker()
        result = generate(ObjectGenerator(tracker))
        assert result.object == {"name": "Rex", "age": 3}
        assert tracker.get_usage_breakdown() == {"agent": 20}

    def test_schema_is_sent_in_system_prompt(self, fake_llm):
        fake_llm.script("Pet", {"name": "Rex", "age": 3})
        generate(ObjectGenerator())
        system = fake_llm.calls[0]["messages"][0]["content"]
        assert system.startswith("Describe a pet.")
        assert '"title": "Pet"' in system

    def test_malformed_json_is_parsed_manually(self, fake_llm):
        fake_llm.script("Pet", "{\n  name: Rex\n  age: 3\n}")
        result = generate(ObjectGenerator())
        assert result.object == {"name": "Rex", "age": 3}
        assert len(fake_llm.calls) == 1

    def test_manually_parsed_output_must_match_the_schema(self, fake_llm):
        fake_llm.script("Pet", "{\n  name: Rex\n}")
        fake_llm.script("fallback", {"name": "Rex", "age": 3})
        result = generate(ObjectGenerator())
        assert result.object == {"name": "Rex", "age": 3}
        assert [c["role"] for c in fake_llm.calls] == ["agent", "fallback"]

    def test_retries_before_fallback(self, fake_llm):
        fake_llm.script("Pet", "not json at all", {"name": "Rex", "age": 3})
        result = generate(ObjectGenerator(), num_retries=1)
        assert result.object == {"name": "Rex", "age": 3}
        assert [c["role"] for c in fake_llm.calls] == ["agent", "agent"]

    def test_fallback_model_extracts_from_failed_text(self, fake_llm):
        fake_llm.script("Pet", "The pet is Rex, three years old")
        fake_llm.script("fallback", {"name": "Rex", "age": 3})
        tracker = TokenTracker()
        result = generate(ObjectGenerator(tracker))

        assert result.object == {"name": "Rex", "age": 3}
        fallback = fake_llm.calls[-1]
        assert fallback["role"] == "fallback"
        assert "The pet is Rex, three years old" in fallback["messages"][-1]["content"]
        assert '"description"' not in fallback["messages"][0]["content"]
        assert tracker.get_usage_breakdown() == {"agent": 20, "fallback": 20}

    def test_original_error_is_raised_when_everything_fails(self, fake_llm):
        fake_llm.script("Pet", "garbage")
        fake_llm.script("fallback", "still garbage")
        with pytest.raises(NoObjectGeneratedError) as excinfo:
            generate(ObjectGenerator())
        assert excinfo.value.text == "garbage"


class TestGenerateText:
    def test_returns_stripped_text(self, fake_llm):
        fake_llm.script("finalizer", "  Polished answer.  \n")
        tracker = TokenTracker()
        text = asyncio.run(ObjectGenerator(tracker).generate_text("finalizer", "Edit this.", "Draft"))
        assert text == "Polished answer."
        assert tracker.get_usage_breakdown() == {"finalizer": 20}
