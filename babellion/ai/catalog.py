"""Configured model catalogue."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from babellion.core.errors import ModelUnavailableError
from babellion.jobs.models import InvokeMode

_ALL_MODES: tuple[InvokeMode, ...] = ("text", "document", "image")


@dataclass(frozen=True)
class ModelConfig:
  """One selectable model."""

  model_id: str
  provider: str
  identifier: str
  enabled: bool = True
  modes: tuple[InvokeMode, ...] = ("text", "document")
  is_default: bool = False

  def supports(self, mode: InvokeMode) -> bool:
    return mode in self.modes


def _coerce_config(raw: Mapping[str, Any]) -> ModelConfig:
  model_id = str(raw["id"]).strip()
  modes = tuple(mode for mode in raw.get("modes") or ("text", "document") if mode in _ALL_MODES)
  return ModelConfig(
    model_id=model_id,
    provider=str(raw.get("provider") or "openai").strip().lower(),
    identifier=str(raw.get("identifier") or model_id).strip(),
    enabled=bool(raw.get("enabled", True)),
    modes=modes or ("text", "document"),
    is_default=bool(raw.get("default", False)),
  )


class ModelCatalog:
  """Resolves model ids to enabled configurations."""

  def __init__(self, models: Iterable[ModelConfig]) -> None:
    self._models = {model.model_id: model for model in models}

  @classmethod
  def from_settings(cls, raw_models: Iterable[Mapping[str, Any]]) -> ModelCatalog:
    return cls(_coerce_config(raw) for raw in raw_models)

  def resolve(self, model_id: str, mode: InvokeMode | None = None) -> ModelConfig:
    """Return the model config or raise ModelUnavailableError."""
    config = self._models.get(model_id)
    if config is None:
      raise ModelUnavailableError(f"Model not found: {model_id}")
    if not config.enabled:
      raise ModelUnavailableError(f"Model is disabled: {model_id}")
    if mode is not None and not config.supports(mode):
      raise ModelUnavailableError(f"Model {model_id} does not support {mode} generation")
    return config

  def default_model(self) -> ModelConfig | None:
    enabled = [model for model in self._models.values() if model.enabled]
    for model in enabled:
      if model.is_default:
        return model
    return enabled[0] if enabled else None

  def list_models(self) -> list[ModelConfig]:
    return list(self._models.values())
