"""Provider interface shared by every chat/embedding backend."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import TokenUsage


@dataclass
class ChatResponse:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


def usage_from(raw: Any) -> TokenUsage:
    """Read an OpenAI-style ``usage`` object (or ``None``) into ``TokenUsage``."""
    if raw is None:
        return TokenUsage()
    prompt = getattr(raw, "prompt_tokens", None) or 0
    completion = getattr(raw, "completion_tokens", None) or 0
    total = getattr(raw, "total_tokens", None) or prompt + completion
    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def require_key(env_var: str, where: str) -> str:
    api_key = os.environ.get(env_var, "")
    if not api_key:
        raise ValueError(f"{env_var} is required. Get one at {where}")
    return api_key


def completion_kwargs(
    model: str,
    messages: List[Dict[str, str]],
    temperature: float,
    max_tokens: Optional[int],
    response_format: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Arguments for an OpenAI-style ``chat.completions.create`` call."""
    kwargs: Dict[str, Any] = {"model": model, "messages": messages, "temperature": temperature}
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    if response_format:
        kwargs["response_format"] = response_format
    return kwargs


class LLMProvider(ABC):
    """Takes OpenAI-style messages, returns text plus token usage.

    Messages look like ``[{"role": "system"|"user"|"assistant", "content": "..."}]``.
    Providers without an embeddings endpoint keep the default ``embed``.
    """

    name: str = "base"

    @abstractmethod
    def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> ChatResponse:
        ...

    def embed(self, model: str, texts: List[str]) -> List[List[float]]:
        """One embedding vector per input text."""
        raise NotImplementedError(f"{self.name} does not provide embeddings")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
