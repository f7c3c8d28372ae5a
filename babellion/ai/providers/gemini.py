"""Gemini provider implementation using the google-genai SDK."""

from __future__ import annotations

import base64
import logging

from google import genai
from google.genai import types

from babellion.ai.backoff import retry_with_backoff
from babellion.ai.providers.base import AIModel, InlineImage, ModelResponse, Provider

logger = logging.getLogger(__name__)


def _usage(response: types.GenerateContentResponse) -> dict[str, int] | None:
  if not response.usage_metadata:
    return None
  metadata = response.usage_metadata
  return {"prompt_tokens": metadata.prompt_token_count or 0, "completion_tokens": metadata.candidates_token_count or 0, "total_tokens": metadata.total_token_count or 0}


class GeminiModel(AIModel):
  """Gemini model client supporting text and image output."""

  supports_images = True

  def __init__(self, name: str, *, api_key: str | None) -> None:
    self.name: str = name
    if not api_key:
      raise ValueError("GEMINI_API_KEY is not configured")
    self._client = genai.Client(api_key=api_key)

  async def generate(self, system_prompt: str, prompt: str) -> ModelResponse:
    """Generate a text response from Gemini."""
    # Use the async client to avoid blocking the asyncio event loop.
    response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=prompt, config=types.GenerateContentConfig(system_instruction=system_prompt))
    logger.debug("Gemini response from %s: %d chars", self.name, len(response.text or ""))
    return ModelResponse(text=response.text or "", usage=_usage(response))

  async def generate_image(self, system_prompt: str, prompt: str, image: InlineImage | None) -> ModelResponse:
    """Generate an image, returning the first inline image part."""
    contents: list[object] = [f"{system_prompt}\n\n{prompt}".strip()]
    if image is not None:
      contents.append(types.Part.from_bytes(data=base64.b64decode(image.data_base64), mime_type=image.mime_type))

    response = await retry_with_backoff(self._client.aio.models.generate_content, model=self.name, contents=contents, config=types.GenerateContentConfig(response_modalities=["TEXT", "IMAGE"]))

    if not response.candidates:
      raise RuntimeError("No response received from Gemini")

    content = response.candidates[0].content
    if content is None or not content.parts:
      raise RuntimeError("Invalid response structure from Gemini")

    text_parts: list[str] = []
    output_image: InlineImage | None = None
    for part in content.parts:
      if part.inline_data is not None and part.inline_data.data and output_image is None:
        output_image = InlineImage(data_base64=base64.b64encode(part.inline_data.data).decode("ascii"), mime_type=part.inline_data.mime_type or "image/png")
      elif part.text:
        text_parts.append(part.text)

    return ModelResponse(text="\n".join(text_parts) or None, image=output_image, usage=_usage(response))


class GeminiProvider(Provider):
  """Gemini provider."""

  def __init__(self, api_key: str | None = None) -> None:
    self.name: str = "gemini"
    self._api_key = api_key

  def get_model(self, model: str) -> AIModel:
    """Return a Gemini model client."""
    return GeminiModel(model, api_key=self._api_key)
