"""Google Gemini through its OpenAI-compatible endpoint.

Requires: GEMINI_API_KEY environment variable.
"""

from typing import List

from .openai_provider import OpenAIProvider


class GeminiProvider(OpenAIProvider):
    name = "gemini"
    API_KEY_ENV = "GEMINI_API_KEY"
    KEY_URL = "https://aistudio.google.com/apikey"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

    def embed(self, model: str, texts: List[str]) -> List[List[float]]:
        # OpenAI embedding names are not served here
        if model.startswith("text-embedding-3"):
            model = "text-embedding-004"
        return super().embed(model, texts)
