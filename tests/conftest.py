"""Shared fixtures: scripted model providers and in-memory stores."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

# Required settings must exist before anything imports the app.
os.environ.setdefault("BABELLION_ALLOWED_ORIGINS", "http://localhost")

import pytest  # noqa: E402

from babellion.ai.catalog import ModelCatalog  # noqa: E402
from babellion.ai.invoker import ModelInvoker  # noqa: E402
from babellion.ai.providers.base import AIModel, InlineImage, ModelResponse, Provider  # noqa: E402
from babellion.jobs.dispatcher import JobDispatcher  # noqa: E402
from babellion.jobs.tasks import TaskRegistry, build_default_registry  # noqa: E402
from babellion.storage.memory_units_repo import InMemoryWorkUnitsRepository  # noqa: E402
from babellion.storage.sources import InMemorySourceRepository, ProofreadingRule, SourceDocument  # noqa: E402

TEST_MODELS: tuple[dict[str, Any], ...] = (
  {"id": "test-text", "provider": "openai", "identifier": "test-text", "modes": ["text", "document"], "default": True},
  {"id": "test-image", "provider": "gemini", "identifier": "test-image", "modes": ["image"]},
  {"id": "retired", "provider": "openai", "identifier": "retired", "enabled": False},
)

TEST_LANGUAGES = {"de": "German", "fr": "French", "es": "Spanish", "it": "Italian"}

SOURCE_IMAGE = "aW1hZ2U="
TRANSLATED_IMAGE = "dHJhbnNsYXRlZA=="


@dataclass
class Gate:
  """Holds a matching model call until released."""

  marker: str
  times: int = 1
  entered: asyncio.Event = field(default_factory=asyncio.Event)
  release: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class ModelCall:
  model: str
  system: str
  prompt: str
  image: InlineImage | None


class ModelScript:
  """Deterministic stand-in for the remote model, keyed by prompt substrings."""

  def __init__(self) -> None:
    self.calls: list[ModelCall] = []
    self._failures: list[list[Any]] = []
    self._responses: list[tuple[str, ModelResponse]] = []
    self._gates: list[Gate] = []

  def fail(self, marker: str, exc: BaseException, times: int | None = None) -> None:
    """Raise exc for matching prompts, forever or for the next `times` calls."""
    self._failures.append([marker, exc, times])

  def respond(self, marker: str, response: ModelResponse) -> None:
    self._responses.append((marker, response))

  def hold(self, marker: str, times: int = 1) -> Gate:
    gate = Gate(marker=marker, times=times)
    self._gates.append(gate)
    return gate

  def release_all(self) -> None:
    for gate in self._gates:
      gate.release.set()

  def prompts_containing(self, marker: str) -> list[str]:
    return [call.prompt for call in self.calls if marker in call.prompt]

  async def __call__(self, model: str, system: str, prompt: str, image: InlineImage | None) -> ModelResponse:
    self.calls.append(ModelCall(model=model, system=system, prompt=prompt, image=image))

    for gate in self._gates:
      if gate.marker in prompt and gate.times > 0:
        gate.times -= 1
        gate.entered.set()
        await gate.release.wait()
        break

    for failure in self._failures:
      marker, exc, remaining = failure
      if marker in prompt and remaining != 0:
        if remaining is not None:
          failure[2] = remaining - 1
        raise exc

    for marker, response in self._responses:
      if marker in prompt:
        return response

    if image is not None and "Proofread" in prompt:
      return ModelResponse(text='{"results": []}')
    if image is not None:
      return ModelResponse(image=InlineImage(data_base64=TRANSLATED_IMAGE))
    return ModelResponse(text=f"[{model}] {prompt}", usage={"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8})


class ScriptedModel(AIModel):
  supports_images = True

  def __init__(self, name: str, script: ModelScript) -> None:
    self.name = name
    self._script = script

  async def generate(self, system_prompt: str, prompt: str) -> ModelResponse:
    return await self._script(self.name, system_prompt, prompt, None)

  async def generate_image(self, system_prompt: str, prompt: str, image: InlineImage | None) -> ModelResponse:
    return await self._script(self.name, system_prompt, prompt, image)


class ScriptedProvider(Provider):
  def __init__(self, name: str, script: ModelScript) -> None:
    self.name = name
    self._script = script

  def get_model(self, model: str) -> AIModel:
    return ScriptedModel(model, self._script)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def script() -> ModelScript:
  return ModelScript()


@pytest.fixture
def providers(script: ModelScript) -> dict[str, Provider]:
  return {"openai": ScriptedProvider("openai", script), "gemini": ScriptedProvider("gemini", script)}


@pytest.fixture
def catalog() -> ModelCatalog:
  return ModelCatalog.from_settings(TEST_MODELS)


@pytest.fixture
def invoker(catalog: ModelCatalog, providers: dict[str, Provider]) -> ModelInvoker:
  return ModelInvoker(catalog, providers)


@pytest.fixture
def tasks() -> TaskRegistry:
  return build_default_registry(TEST_LANGUAGES)


@pytest.fixture
def units_repo() -> InMemoryWorkUnitsRepository:
  return InMemoryWorkUnitsRepository()


@pytest.fixture
def sources() -> InMemorySourceRepository:
  document = SourceDocument(
    parent_id="doc-1",
    text="<p>Hello world</p>",
    image_base64=SOURCE_IMAGE,
    mime_type="image/png",
    rules=(ProofreadingRule(title="Oxford comma", rule_text="Use a comma before the final item."),),
  )
  return InMemorySourceRepository([document])


@pytest.fixture
def make_dispatcher(
  units_repo: InMemoryWorkUnitsRepository,
  sources: InMemorySourceRepository,
  invoker: ModelInvoker,
  tasks: TaskRegistry,
) -> Callable[..., JobDispatcher]:
  def _make(**kwargs: Any) -> JobDispatcher:
    return JobDispatcher(units_repo, sources, invoker, tasks, **kwargs)

  return _make


@pytest.fixture
def dispatcher(make_dispatcher: Callable[..., JobDispatcher]) -> JobDispatcher:
  return make_dispatcher()
