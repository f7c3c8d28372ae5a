"""Model invoker: the single outbound call boundary of the pipeline."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass

import httpx
from openai import APIConnectionError

from babellion.ai.backoff import is_quota_error
from babellion.ai.catalog import ModelCatalog
from babellion.ai.providers.base import InlineImage, Provider
from babellion.core.errors import ModelUnavailableError, ProviderError
from babellion.jobs.models import InvokeMode

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})


@dataclass(frozen=True)
class Prompt:
  """System instructions, user content and an optional inline image."""

  system: str
  user: str
  image: InlineImage | None = None


@dataclass(frozen=True)
class RawOutput:
  """Unparsed model output."""

  text: str | None = None
  image: InlineImage | None = None
  usage: dict[str, int] | None = None


def _status_code(exc: BaseException) -> int | None:
  for attr in ("status_code", "code"):
    value = getattr(exc, attr, None)
    if isinstance(value, int):
      return value
  return None


def classify_provider_error(exc: BaseException) -> ProviderError:
  """Map an SDK/transport exception onto a transient or fatal ProviderError."""
  if isinstance(exc, ProviderError):
    return exc

  status_code = _status_code(exc)
  message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__

  if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError, httpx.TransportError, APIConnectionError)):
    return ProviderError(message, kind="transient", status_code=status_code)

  if status_code is not None and (status_code in _TRANSIENT_STATUS_CODES or status_code >= 500):
    return ProviderError(message, kind="transient", status_code=status_code)

  if is_quota_error(exc):
    return ProviderError(message, kind="transient", status_code=status_code)

  return ProviderError(message, kind="fatal", status_code=status_code)


class ModelInvoker:
  """Sends one prompt to the provider behind a configured model id."""

  def __init__(self, catalog: ModelCatalog, providers: Mapping[str, Provider]) -> None:
    self._catalog = catalog
    self._providers = dict(providers)

  @property
  def catalog(self) -> ModelCatalog:
    return self._catalog

  async def invoke(self, prompt: Prompt, model_id: str, mode: InvokeMode) -> RawOutput:
    """Invoke the model, raising ProviderError on any provider or transport failure."""
    config = self._catalog.resolve(model_id, mode)
    provider = self._providers.get(config.provider)
    if provider is None:
      raise ModelUnavailableError(f"Provider {config.provider!r} is not configured for model {model_id}")

    started = time.monotonic()
    try:
      model = provider.get_model(config.identifier)
      if mode == "image":
        response = await model.generate_image(prompt.system, prompt.user, prompt.image)
      else:
        response = await model.generate(prompt.system, prompt.user)
    except asyncio.CancelledError:
      raise
    except Exception as exc:  # noqa: BLE001
      error = classify_provider_error(exc)
      logger.error("Model call failed model=%s mode=%s kind=%s after %.1fs: %s", model_id, mode, error.kind, time.monotonic() - started, error)
      raise error from exc

    logger.info("Model call finished model=%s mode=%s in %.1fs", model_id, mode, time.monotonic() - started)
    return RawOutput(text=response.text, image=response.image, usage=response.usage)


def build_providers(*, openai_api_key: str | None, openai_base_url: str | None, gemini_api_key: str | None) -> dict[str, Provider]:
  """Build the provider map; missing keys surface as fatal errors at call time."""
  from babellion.ai.providers import GeminiProvider, OpenAIProvider

  return {"openai": OpenAIProvider(api_key=openai_api_key, base_url=openai_base_url), "gemini": GeminiProvider(api_key=gemini_api_key)}
