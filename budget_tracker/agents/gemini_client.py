"""
Gemini Client

Thin wrapper around google.generativeai. One GenerativeModel is built per
model name and reused; the agents pick which name to call through their
ProviderChain.
"""

from typing import Any, Optional, Sequence

import google.generativeai as genai

from budget_tracker.config import GeminiSettings, get_settings


class GeminiClient:
    """
    Generates text from prompts and inline media.

    Args:
        settings: Gemini configuration. Defaults to the environment.
    """

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or get_settings().gemini
        self._models: dict[str, Any] = {}
        genai.configure(api_key=self._settings.api_key)

    @property
    def model_names(self) -> list[str]:
        return self._settings.model_names_list

    def _model(self, model_name: str):
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(
                model_name=model_name,
                generation_config={
                    "temperature": self._settings.temperature,
                    "max_output_tokens": self._settings.max_tokens,
                },
            )
        return self._models[model_name]

    async def generate(self, model_name: str, parts: Sequence[Any]) -> str:
        """
        Run one generation and return the response text.

        Parts are prompt strings or inline blobs built with `inline_data`.
        """
        response = await self._model(model_name).generate_content_async(list(parts))
        return response.text.strip()


def inline_data(data: bytes, mime_type: str) -> dict:
    """Inline media part for an image or audio clip."""
    return {"mime_type": mime_type, "data": data}
