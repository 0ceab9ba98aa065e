"""HuggingFace Inference API.

Chat goes through one of the HF inference providers (novita, sambanova,
auto...); embeddings use the feature-extraction task.

Requires: HF_TOKEN environment variable.
"""

from typing import Any, Dict, List, Optional

from huggingface_hub import InferenceClient

from .base import ChatResponse, LLMProvider, completion_kwargs, require_key, usage_from


class HuggingFaceProvider(LLMProvider):
    name = "huggingface"

    EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

    def __init__(self, hf_provider: str = "novita"):
        token = require_key("HF_TOKEN", "https://huggingface.co/settings/tokens")
        self.hf_provider = hf_provider
        self.client = InferenceClient(api_key=token, provider=hf_provider)
        self.embed_client = InferenceClient(api_key=token)

    def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: Optional[int] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> ChatResponse:
        completion = self.client.chat.completions.create(
            **completion_kwargs(model, messages, temperature, max_tokens, response_format)
        )
        return ChatResponse(
            text=completion.choices[0].message.content or "",
            usage=usage_from(getattr(completion, "usage", None)),
        )

    def embed(self, model: str, texts: List[str]) -> List[List[float]]:
        if "/" not in model:
            model = self.EMBEDDING_MODEL
        vectors = []
        for text in texts:
            arr = self.embed_client.feature_extraction(text, model=model)
            # token-level output is mean-pooled into one sentence vector
            if getattr(arr, "ndim", 1) > 1:
                arr = arr.reshape(-1, arr.shape[-1]).mean(axis=0)
            vectors.append([float(x) for x in arr])
        return vectors
