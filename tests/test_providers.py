"""Provider registry and message adaptation."""

from types import SimpleNamespace

import pytest

from deepsearch.providers import get_provider, list_providers
from deepsearch.providers.anthropic_provider import split_messages
from deepsearch.providers.base import completion_kwargs, usage_from


def test_unknown_provider():
    with pytest.raises(ValueError, match="Unknown provider"):
        get_provider("watson")


def test_missing_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
        get_provider("anthropic")


def test_list_providers():
    assert list_providers() == ["gemini", "openai", "anthropic", "huggingface"]


def test_split_messages_folds_system_and_repeated_roles():
    system, convo = split_messages([
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hi"},
        {"role": "user", "content": "Capital of France?"},
        {"role": "assistant", "content": "Paris."},
    ])
    assert system == ["Be brief."]
    assert convo == [
        {"role": "user", "content": "Hi\n\nCapital of France?"},
        {"role": "assistant", "content": "Paris."},
    ]


def test_split_messages_starts_with_user():
    _, convo = split_messages([{"role": "assistant", "content": "Earlier answer."}])
    assert convo[0] == {"role": "user", "content": "Please respond."}


def test_completion_kwargs_omits_unset_options():
    kwargs = completion_kwargs("m", [], 0.2, None, None)
    assert kwargs == {"model": "m", "messages": [], "temperature": 0.2}
    kwargs = completion_kwargs("m", [], 0.2, 100, {"type": "json_object"})
    assert kwargs["max_tokens"] == 100
    assert kwargs["response_format"] == {"type": "json_object"}


def test_usage_from():
    assert usage_from(None).total_tokens == 0
    usage = usage_from(SimpleNamespace(prompt_tokens=7, completion_tokens=3, total_tokens=None))
    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (7, 3, 10)
