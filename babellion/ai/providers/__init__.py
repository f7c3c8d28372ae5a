"""Provider implementations."""

from babellion.ai.providers.base import AIModel, InlineImage, ModelResponse, Provider
from babellion.ai.providers.gemini import GeminiModel, GeminiProvider
from babellion.ai.providers.openai_compat import OpenAIModel, OpenAIProvider

__all__ = ["AIModel", "InlineImage", "ModelResponse", "Provider", "GeminiModel", "GeminiProvider", "OpenAIModel", "OpenAIProvider"]
