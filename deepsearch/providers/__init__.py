"""Chat and embedding backends, looked up by name.

  - gemini      Google Gemini via its OpenAI-compatible endpoint
  - openai      OpenAI GPT models and embeddings
  - anthropic   Anthropic Claude models, chat only
  - huggingface HuggingFace Inference API
"""

from typing import Dict, List

from .base import ChatResponse, LLMProvider

_cache: Dict[str, LLMProvider] = {}

PROVIDERS = ["gemini", "openai", "anthropic", "huggingface"]


def _create(name: str, **kwargs) -> LLMProvider:
    if name == "gemini":
        from .gemini_provider import GeminiProvider
        return GeminiProvider(**kwargs)
    if name == "openai":
        from .openai_provider import OpenAIProvider
        return OpenAIProvider(**kwargs)
    if name == "anthropic":
        from .anthropic_provider import AnthropicProvider
        return AnthropicProvider(**kwargs)
    if name == "huggingface":
        from .huggingface_provider import HuggingFaceProvider
        return HuggingFaceProvider(**kwargs)
    raise ValueError(f"Unknown provider: '{name}'. Supported: {', '.join(PROVIDERS)}")


def get_provider(name: str, **kwargs) -> LLMProvider:
    """Cached provider instance; a missing API key raises ``ValueError``."""
    cache_key = f"{name}:{sorted(kwargs.items())}" if kwargs else name
    if cache_key not in _cache:
        _cache[cache_key] = _create(name, **kwargs)
    return _cache[cache_key]


def list_providers() -> List[str]:
    return list(PROVIDERS)


__all__ = ["ChatResponse", "LLMProvider", "get_provider", "list_providers"]
