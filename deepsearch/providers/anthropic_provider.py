"""Anthropic Claude, chat only.

The Messages API takes the system prompt as a top-level parameter and
only alternating user/assistant turns, so OpenAI-style messages are
folded before sending. There is no embeddings endpoint; ``embed`` keeps
the base behaviour and raises.

Requires: ANTHROPIC_API_KEY environment variable.
"""

from typing import Any, Dict, List, Optional, Tuple

import anthropic

from ..models import TokenUsage
from .base import ChatResponse, LLMProvider, require_key


def split_messages(messages: List[Dict[str, str]]) -> Tuple[List[str], List[Dict[str, str]]]:
    """Separate system text and merge consecutive same-role turns."""
    system_parts: List[str] = []
    conversation: List[Dict[str, str]] = []
    for msg in messages:
        if msg["role"] == "system":
            system_parts.append(msg["content"])
        elif conversation and conversation[-1]["role"] == msg["role"]:
            conversation[-1]["content"] += "\n\n" + msg["content"]
        else:
            conversation.append({"role": msg["role"], "content": msg["content"]})
    if not conversation or conversation[0]["role"] != "user":
        conversation.insert(0, {"role": "user", "content": "Please respond."})
    return system_parts, conversation


class AnthropicProvider(LLMProvider):
    name = "anthropic"

    def __init__(self):
        self.client = anthropic.Anthropic(
            api_key=require_key("ANTHROPIC_API_KEY", "https://console.anthropic.com/settings/keys")
        )

    def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> ChatResponse:
        system_parts, conversation = split_messages(messages)
        if response_format and response_format.get("type") == "json_object":
            system_parts.append("Respond with valid JSON only.")

        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": conversation,
            "temperature": temperature,
            "max_tokens": max_tokens or 8192,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        response = self.client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if block.type == "text")
        prompt, completion = response.usage.input_tokens, response.usage.output_tokens
        return ChatResponse(
            text=text,
            usage=TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion),
        )
