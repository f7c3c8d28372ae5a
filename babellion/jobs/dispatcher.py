"""Single-flight submission and execution of generation work units."""

from __future__ import annotations

import asyncio
import logging

from babellion.ai.catalog import ModelCatalog
from babellion.ai.invoker import ModelInvoker
from babellion.core.errors import AlreadyInFlightError, InvalidTargetError, ModelUnavailableError, ParentNotFoundError, ProviderError
from babellion.jobs.models import Clock, WorkUnit, error_summary, utc_now
from babellion.jobs.tasks import GenerationTask, StageResult, TaskRegistry
from babellion.storage.sources import SourceRepository
from babellion.storage.units_repo import WorkUnitsRepository
from babellion.utils.ids import generate_unit_id

logger = logging.getLogger(__name__)


class JobDispatcher:
  """Creates work units and drives each one through exactly one model call."""

  def __init__(
    self,
    units: WorkUnitsRepository,
    sources: SourceRepository,
    invoker: ModelInvoker,
    tasks: TaskRegistry,
    *,
    catalog: ModelCatalog | None = None,
    clock: Clock = utc_now,
  ) -> None:
    self._units = units
    self._sources = sources
    self._invoker = invoker
    self._tasks = tasks
    self._catalog = catalog or invoker.catalog
    self._clock = clock

  @property
  def tasks(self) -> TaskRegistry:
    return self._tasks

  async def submit(self, parent_id: str, target: str, model_id: str, *, stage: str = "translation", derived_from: str | None = None) -> WorkUnit:
    """Create a unit and run it to a terminal state."""
    unit = await self.enqueue(parent_id, target, model_id, stage=stage, derived_from=derived_from)
    return await self.execute(unit)

  async def enqueue(
    self,
    parent_id: str,
    target: str,
    model_id: str,
    *,
    stage: str = "translation",
    derived_from: str | None = None,
    supersede: bool = False,
  ) -> WorkUnit:
    """Validate a submission and persist a pending unit.

    Raises a SubmissionError subclass when the submission is rejected; no unit
    is created in that case.
    """
    task = self._tasks.resolve(stage)
    task.validate_target(target)
    self._catalog.resolve(model_id, task.mode)

    source = await self._sources.get_source(parent_id)
    if source is None:
      raise ParentNotFoundError(f"Parent not found: {parent_id}")
    task.validate_source(source)

    if task.is_derived:
      derived_from = await self._resolve_upstream(task, parent_id, target, derived_from)

    unit_id = generate_unit_id()
    active = await self._units.find_active(parent_id, target)
    if active is not None:
      if not supersede:
        raise AlreadyInFlightError(parent_id, target, active.unit_id)
      await self._supersede(active, unit_id)

    now = self._clock()
    unit = WorkUnit(
      unit_id=unit_id,
      parent_id=parent_id,
      target=target,
      stage=stage,
      status="pending",
      model_id=model_id,
      created_at=now,
      updated_at=now,
      derived_from=derived_from,
    )
    created = await self._units.create_unit(unit)
    logger.info("Created unit %s parent=%s target=%s stage=%s model=%s", unit_id, parent_id, target, stage, model_id)
    return created

  async def execute(self, unit: WorkUnit) -> WorkUnit:
    """Move a pending unit to running, invoke the model once and record the outcome.

    Invoker and extraction failures are written to the unit, never raised.
    """
    task = self._tasks.resolve(unit.stage)
    started_at = self._clock()
    running = await self._units.update_unit(unit.unit_id, expected_status="pending", status="running", started_at=started_at, updated_at=started_at)
    if running is None:
      logger.warning("Unit %s is no longer pending; skipping execution", unit.unit_id)
      return await self._units.get_unit(unit.unit_id) or unit

    logger.info("Started unit %s target=%s stage=%s", unit.unit_id, unit.target, unit.stage)
    result = await self._generate(task, running)
    return await self._finish(running, result)

  async def _generate(self, task: GenerationTask, unit: WorkUnit) -> StageResult:
    try:
      source = await self._sources.get_source(unit.parent_id)
      if source is None:
        raise ParentNotFoundError(f"Parent not found: {unit.parent_id}")
      upstream = await self._units.get_unit(unit.derived_from) if unit.derived_from else None
      prompt = task.build_prompt(source, unit.target, upstream)
      output = await self._invoker.invoke(prompt, unit.model_id, task.mode)
      result = task.interpret(output)
    except asyncio.CancelledError:
      raise
    except ProviderError as exc:
      return StageResult.failed("provider_transient" if exc.transient else "provider_fatal", str(exc))
    except ModelUnavailableError as exc:
      return StageResult.failed("provider_fatal", str(exc))
    except Exception as exc:  # noqa: BLE001
      logger.exception("Unit %s crashed before reaching a terminal state", unit.unit_id)
      return StageResult.failed("internal", f"{type(exc).__name__}: {exc}")

    if result.status == "completed" and output.usage and result.payload is not None:
      result = StageResult.completed({**result.payload, "usage": output.usage})
    return result

  async def _finish(self, running: WorkUnit, result: StageResult) -> WorkUnit:
    finished_at = self._clock()
    updated = await self._units.update_unit(
      running.unit_id,
      expected_status="running",
      status=result.status,
      result_payload=result.payload,
      error=result.error,
      completed_at=finished_at,
      updated_at=finished_at,
    )
    if updated is None:
      current = await self._units.get_unit(running.unit_id)
      logger.warning("Discarded late %s result for unit %s (now %s)", result.status, running.unit_id, current.status if current else "missing")
      return current or running

    duration = (finished_at - (running.started_at or running.created_at)).total_seconds()
    if result.status == "completed":
      logger.info("Completed unit %s target=%s stage=%s in %.1fs", running.unit_id, running.target, running.stage, duration)
    else:
      logger.warning("Unit %s target=%s stage=%s failed in %.1fs: %s", running.unit_id, running.target, running.stage, duration, result.error)
    return updated

  async def _supersede(self, active: WorkUnit, replacement_id: str) -> None:
    now = self._clock()
    error = error_summary("superseded", f"Superseded by unit {replacement_id}")
    updated = await self._units.update_unit(active.unit_id, expected_status=active.status, status="failed", error=error, superseded_by=replacement_id, completed_at=now, updated_at=now)
    if updated is not None:
      logger.info("Superseded unit %s with %s", active.unit_id, replacement_id)
      return

    # The unit moved on between the lookup and the update; re-check before giving up.
    still_active = await self._units.find_active(active.parent_id, active.target)
    if still_active is not None:
      raise AlreadyInFlightError(active.parent_id, active.target, still_active.unit_id)

  async def _resolve_upstream(self, task: GenerationTask, parent_id: str, target: str, derived_from: str | None) -> str:
    if derived_from is not None:
      upstream = await self._units.get_unit(derived_from)
      if upstream is None or upstream.parent_id != parent_id or upstream.target != target or upstream.stage != task.upstream_stage or upstream.status != "completed":
        raise InvalidTargetError(f"Unit {derived_from} is not a completed {task.upstream_stage} of target {target}.")
      return upstream.unit_id

    completed = [unit for unit in await self._units.list_units(parent_id) if unit.target == target and unit.stage == task.upstream_stage and unit.status == "completed"]
    if not completed:
      raise InvalidTargetError(f"Target {target} has no completed {task.upstream_stage} to derive {task.stage} from.")
    return completed[-1].unit_id
