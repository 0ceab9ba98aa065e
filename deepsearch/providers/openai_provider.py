"""OpenAI chat and embeddings, plus any endpoint speaking the same API.

Requires: OPENAI_API_KEY environment variable.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from .base import ChatResponse, LLMProvider, completion_kwargs, require_key, usage_from


class OpenAIProvider(LLMProvider):
    name = "openai"
    API_KEY_ENV = "OPENAI_API_KEY"
    KEY_URL = "https://platform.openai.com/api-keys"
    BASE_URL: Optional[str] = None

    def __init__(self):
        self.client = OpenAI(api_key=require_key(self.API_KEY_ENV, self.KEY_URL), base_url=self.BASE_URL)

    def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> ChatResponse:
        response = self.client.chat.completions.create(
            **completion_kwargs(model, messages, temperature, max_tokens, response_format)
        )
        return ChatResponse(text=response.choices[0].message.content or "", usage=usage_from(response.usage))

    def embed(self, model: str, texts: List[str]) -> List[List[float]]:
        response = self.client.embeddings.create(model=model, input=texts)
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
