"""OpenAI-compatible provider implementation using the openai SDK."""

from __future__ import annotations

import logging
from typing import Final

from openai import AsyncOpenAI

from babellion.ai.providers.base import AIModel, ModelResponse, Provider

logger = logging.getLogger(__name__)

# Long documents can take minutes to translate; keep the SDK from giving up early.
_REQUEST_TIMEOUT_SECONDS: Final[float] = 900.0
_SDK_MAX_RETRIES: Final[int] = 2


class OpenAIModel(AIModel):
  """Chat-completions model client."""

  def __init__(self, name: str, *, api_key: str | None, base_url: str | None = None) -> None:
    self.name: str = name
    if not api_key:
      raise ValueError("OPENAI_API_KEY is not configured")
    self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=_REQUEST_TIMEOUT_SECONDS, max_retries=_SDK_MAX_RETRIES)

  async def generate(self, system_prompt: str, prompt: str) -> ModelResponse:
    """Generate a text response."""
    response = await self._client.chat.completions.create(model=self.name, messages=[{"role": "system", "content": system_prompt}, {"role": "user", "content": prompt}])

    content = response.choices[0].message.content or ""
    logger.debug("OpenAI response from %s: %d chars", self.name, len(content))
    usage = None

    if response.usage:
      usage = {"prompt_tokens": response.usage.prompt_tokens, "completion_tokens": response.usage.completion_tokens, "total_tokens": response.usage.total_tokens}

    return ModelResponse(text=content, usage=usage)


class OpenAIProvider(Provider):
  """OpenAI (or OpenAI-compatible endpoint) provider."""

  def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
    self.name: str = "openai"
    self._api_key = api_key
    self._base_url = base_url

  def get_model(self, model: str) -> AIModel:
    """Return an OpenAI model client."""
    return OpenAIModel(model, api_key=self._api_key, base_url=self._base_url)
