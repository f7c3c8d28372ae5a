"""Base interfaces for AI providers and models."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class InlineImage:
  """Base64 image sent to or received from a model."""

  data_base64: str
  mime_type: str = "image/png"


@dataclass
class ModelResponse:
  """Normalized model output."""

  text: str | None = None
  image: InlineImage | None = None
  usage: dict[str, int] | None = None


class AIModel(ABC):
  """Abstract base class for AI models."""

  name: str
  supports_images: bool = False

  @abstractmethod
  async def generate(self, system_prompt: str, prompt: str) -> ModelResponse:
    """Generate a text response for the given prompt."""

  async def generate_image(self, system_prompt: str, prompt: str, image: InlineImage | None) -> ModelResponse:
    """Generate an image (optionally conditioned on an input image)."""
    raise RuntimeError(f"Image generation is not supported by model '{self.name}'.")


class Provider(ABC):
  """Abstract base class for AI providers."""

  name: str

  @abstractmethod
  def get_model(self, model: str) -> AIModel:
    """Return the model client for the provider."""
