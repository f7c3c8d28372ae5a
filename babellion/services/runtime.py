"""Wiring of the generation pipeline for one process."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from babellion.ai.catalog import ModelCatalog
from babellion.ai.invoker import ModelInvoker, build_providers
from babellion.ai.providers.base import Provider
from babellion.config import Settings
from babellion.jobs.dispatcher import JobDispatcher
from babellion.jobs.models import WorkUnit
from babellion.jobs.orchestrator import PipelineOrchestrator
from babellion.jobs.tasks import TaskRegistry, build_default_registry
from babellion.storage.sources import InMemorySourceRepository, SourceRepository
from babellion.storage.units_repo import WorkUnitsRepository

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
  """Everything the API needs to submit, run and observe work units."""

  settings: Settings
  units: WorkUnitsRepository
  sources: SourceRepository
  catalog: ModelCatalog
  invoker: ModelInvoker
  tasks: TaskRegistry
  dispatcher: JobDispatcher
  orchestrator: PipelineOrchestrator
  _background: set[asyncio.Task[Any]] = field(default_factory=set, repr=False)

  def execute_in_background(self, unit: WorkUnit) -> asyncio.Task[WorkUnit]:
    """Run a pending unit without blocking the caller."""
    task = asyncio.create_task(self.dispatcher.execute(unit), name=f"unit-{unit.unit_id}")
    self._background.add(task)
    task.add_done_callback(self._log_task_error)
    return task

  def _log_task_error(self, task: asyncio.Task[Any]) -> None:
    self._background.discard(task)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Background unit execution failed: %s", exc, exc_info=exc)

  async def shutdown(self) -> None:
    await self.orchestrator.shutdown()
    pending = [task for task in self._background if not task.done()]
    for task in pending:
      task.cancel()
    if pending:
      await asyncio.gather(*pending, return_exceptions=True)


def _default_units_repo(settings: Settings) -> WorkUnitsRepository:
  if settings.pg_dsn:
    from babellion.storage.postgres_units_repo import PostgresWorkUnitsRepository

    logger.info("Using Postgres work unit store")
    return PostgresWorkUnitsRepository()

  logger.info("BABELLION_PG_DSN not set; using in-memory work unit store")
  from babellion.storage.memory_units_repo import InMemoryWorkUnitsRepository

  return InMemoryWorkUnitsRepository()


def build_runtime(
  settings: Settings,
  *,
  units: WorkUnitsRepository | None = None,
  sources: SourceRepository | None = None,
  providers: Mapping[str, Provider] | None = None,
) -> PipelineRuntime:
  """Assemble the pipeline from settings; collaborators can be swapped for tests."""
  units = units or _default_units_repo(settings)
  sources = sources or InMemorySourceRepository()
  catalog = ModelCatalog.from_settings(settings.models)
  if providers is None:
    providers = build_providers(openai_api_key=settings.openai_api_key, openai_base_url=settings.openai_base_url, gemini_api_key=settings.gemini_api_key)
  invoker = ModelInvoker(catalog, providers)
  tasks = build_default_registry(
    settings.languages,
    translation_system_prompt=settings.translation_system_prompt,
    proofread_system_prompt=settings.proofread_system_prompt,
    rule_proofread_system_prompt=settings.rule_proofread_system_prompt,
    image_translation_prompt=settings.image_translation_prompt,
  )
  dispatcher = JobDispatcher(units, sources, invoker, tasks, catalog=catalog)
  orchestrator = PipelineOrchestrator(
    dispatcher,
    units,
    poll_interval_seconds=settings.poll_interval_seconds,
    stall_timeout_seconds=settings.stall_timeout_seconds,
    max_targets=settings.max_targets,
    idle_ttl_seconds=settings.supervisor_idle_ttl_seconds,
  )
  return PipelineRuntime(settings=settings, units=units, sources=sources, catalog=catalog, invoker=invoker, tasks=tasks, dispatcher=dispatcher, orchestrator=orchestrator)
