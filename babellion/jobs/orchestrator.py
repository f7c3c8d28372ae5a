"""Per-parent fan-out of generation targets with chained derived stages.

Each parent gets one `ParentSupervisor`. It owns a `TargetStateMachine` per
target and a `StatusPoller`, runs every target's pipeline as its own asyncio
task, and reports per-target phase changes to subscribers. A target's failure
is recorded on its own outcome and never interrupts the other targets.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from babellion.core.errors import AlreadyInFlightError, InvalidTargetError, SubmissionError
from babellion.jobs.dispatcher import JobDispatcher
from babellion.jobs.lifecycle import InvalidTargetPhaseError, TargetPhase, TargetStateMachine
from babellion.jobs.models import Clock, WorkUnit, error_summary, utc_now
from babellion.jobs.poller import StallNotice, StatusPoller
from babellion.jobs.tasks import TaskRegistry
from babellion.storage.units_repo import WorkUnitsRepository

logger = logging.getLogger(__name__)

StageStatus = Literal["completed", "failed", "stalled", "cancelled", "rejected"]


@dataclass(frozen=True)
class StageOutcome:
  """How one stage of one target ended."""

  stage: str
  status: StageStatus
  unit_id: str | None = None
  result_payload: dict[str, Any] | None = None
  error: dict[str, Any] | None = None
  duration_seconds: float = 0.0


@dataclass(frozen=True)
class TargetOutcome:
  """Primary and (optional) derived stage outcomes for one target."""

  parent_id: str
  target: str
  primary: StageOutcome
  derived: StageOutcome | None = None

  @property
  def status(self) -> StageStatus:
    """Status of the furthest stage reached."""
    return (self.derived or self.primary).status


@dataclass(frozen=True)
class TargetEvent:
  """Published to subscribers on every per-target phase change."""

  parent_id: str
  target: str
  phase: TargetPhase
  stage: str | None
  unit_id: str | None
  error: dict[str, Any] | None = None


TargetListener = Callable[[TargetEvent], None]


@dataclass
class _TargetRequest:
  model_id: str
  stage: str
  runtimes: dict[str, float] = field(default_factory=dict)


class ParentSupervisor:
  """Supervises every target of one parent."""

  def __init__(
    self,
    parent_id: str,
    dispatcher: JobDispatcher,
    poller: StatusPoller,
    tasks: TaskRegistry,
    *,
    max_targets: int = 20,
    monotonic: Callable[[], float] = time.monotonic,
  ) -> None:
    self.parent_id = parent_id
    self._dispatcher = dispatcher
    self._poller = poller
    self._tasks = tasks
    self._max_targets = max_targets
    self._machines: dict[str, TargetStateMachine] = {}
    self._requests: dict[str, _TargetRequest] = {}
    self._pipelines: dict[str, asyncio.Task[TargetOutcome]] = {}
    self._abandon: dict[str, asyncio.Event] = {}
    self._cancelled: set[str] = set()
    self._background: set[asyncio.Task[Any]] = set()
    self._listeners: list[TargetListener] = []
    self._monotonic = monotonic
    self._last_activity = monotonic()
    poller.on_stall(self._on_stall)

  @property
  def poller(self) -> StatusPoller:
    return self._poller

  def subscribe(self, listener: TargetListener) -> Callable[[], None]:
    """Register a listener; the returned callable unsubscribes it."""
    self._listeners.append(listener)

    def _unsubscribe() -> None:
      if listener in self._listeners:
        self._listeners.remove(listener)

    return _unsubscribe

  def start(self, targets: Iterable[str], model_id: str, stage: str = "translation") -> list[asyncio.Task[TargetOutcome]]:
    """Start one pipeline per target and return their tasks without waiting."""
    unique_targets = list(dict.fromkeys(targets))
    if not unique_targets:
      raise InvalidTargetError("At least one target is required.")
    if len(unique_targets) > self._max_targets:
      raise InvalidTargetError(f"At most {self._max_targets} targets can run at once.")

    task = self._tasks.resolve(stage)
    if task.is_derived:
      raise InvalidTargetError(f"{stage} is chained automatically and cannot start a run.")

    busy = [target for target in unique_targets if self._is_busy(target)]
    if busy:
      machine = self._machines[busy[0]]
      raise AlreadyInFlightError(self.parent_id, busy[0], machine.unit_id)

    logger.info("Starting %s for parent %s across %d target(s) with model %s", stage, self.parent_id, len(unique_targets), model_id)
    pipelines: list[asyncio.Task[TargetOutcome]] = []
    for target in unique_targets:
      supersede = self._reset_settled(target)
      pipelines.append(self._spawn(target, model_id, stage, supersede=supersede))
    return pipelines

  async def run(self, targets: Iterable[str], model_id: str, stage: str = "translation") -> AsyncIterator[TargetOutcome]:
    """Yield each target's outcome as soon as that target settles."""
    pipelines = self.start(targets, model_id, stage)
    for finished in asyncio.as_completed(pipelines):
      yield await finished

  async def run_all(self, targets: Iterable[str], model_id: str, stage: str = "translation") -> dict[str, TargetOutcome]:
    outcomes: dict[str, TargetOutcome] = {}
    async for outcome in self.run(targets, model_id, stage):
      outcomes[outcome.target] = outcome
    return outcomes

  def retry(self, target: str) -> asyncio.Task[TargetOutcome]:
    """Re-run a settled target from the stage that did not complete."""
    machine = self._machines.get(target)
    request = self._requests.get(target)
    if machine is None or request is None:
      raise InvalidTargetError(f"Target {target} has not been run for parent {self.parent_id}.")
    if self._is_busy(target):
      raise AlreadyInFlightError(self.parent_id, target, machine.unit_id)
    if not machine.retryable:
      raise InvalidTargetPhaseError(f"Target {target!r} cannot be retried from {machine.phase}.")

    resume_derived = machine.phase != "completed" and machine.stage is not None and machine.stage != request.stage
    supersede = self._reset_settled(target, force=True)
    logger.info("Retrying target %s of parent %s (derived only: %s)", target, self.parent_id, resume_derived)
    return self._spawn(target, request.model_id, request.stage, resume_derived=resume_derived, supersede=supersede)

  def cancel(self, target: str) -> bool:
    """Stop tracking a target and skip its remaining stages. The remote call keeps running."""
    machine = self._machines.get(target)
    if machine is None or machine.phase not in ("queued", "running"):
      return False

    self._cancelled.add(target)
    if machine.unit_id and machine.unit_id in self._abandon:
      self._abandon[machine.unit_id].set()
    logger.info("Cancelled target %s of parent %s", target, self.parent_id)
    return True

  def idle_seconds(self) -> float | None:
    """Seconds since the last phase change, or None while any work or polling is still active."""
    if self._poller.running or any(not task.done() for task in (*self._pipelines.values(), *self._background)):
      return None
    return self._monotonic() - self._last_activity

  def snapshot(self) -> dict[str, dict[str, Any]]:
    """Client-side view of every target, including local stall state."""
    view: dict[str, dict[str, Any]] = {}
    for target, machine in self._machines.items():
      request = self._requests.get(target)
      view[target] = {
        "phase": machine.phase,
        "stage": machine.stage,
        "unit_id": machine.unit_id,
        "error": machine.error,
        "runtimes": dict(request.runtimes) if request else {},
      }
    return view

  async def close(self) -> None:
    await self._poller.stop()
    pending = [task for task in (*self._pipelines.values(), *self._background) if not task.done()]
    for task in pending:
      task.cancel()
    if pending:
      await asyncio.gather(*pending, return_exceptions=True)

  def _reset_settled(self, target: str, *, force: bool = False) -> bool:
    """Move a settled target through `retried`; returns whether its unit must be superseded."""
    machine = self._machines.get(target)
    if machine is None or machine.phase == "idle":
      return False
    if machine.phase == "completed" and not force:
      return False

    # A stalled or cancelled unit may still be running remotely.
    supersede = machine.phase in ("stalled", "cancelled")
    if machine.unit_id:
      self._poller.clear_stall(machine.unit_id)
    machine.retry()
    self._emit(machine)
    return supersede

  def _is_busy(self, target: str) -> bool:
    pipeline = self._pipelines.get(target)
    return pipeline is not None and not pipeline.done()

  def _spawn(self, target: str, model_id: str, stage: str, *, resume_derived: bool = False, supersede: bool = False) -> asyncio.Task[TargetOutcome]:
    request = self._requests.get(target)
    if request is None or not resume_derived:
      request = _TargetRequest(model_id=model_id, stage=stage)
      self._requests[target] = request
    self._machines.setdefault(target, TargetStateMachine(target=target))
    self._cancelled.discard(target)
    pipeline = asyncio.create_task(self._pipeline(target, request, resume_derived=resume_derived, supersede=supersede), name=f"target-{self.parent_id}-{target}")
    self._pipelines[target] = pipeline
    return pipeline

  async def _pipeline(self, target: str, request: _TargetRequest, *, resume_derived: bool, supersede: bool) -> TargetOutcome:
    machine = self._machines[target]
    task = self._tasks.resolve(request.stage)
    try:
      if resume_derived and task.derived_stage:
        derived = await self._run_stage(machine, request, task.derived_stage, supersede=supersede)
        return TargetOutcome(parent_id=self.parent_id, target=target, primary=StageOutcome(stage=request.stage, status="completed"), derived=derived)

      primary = await self._run_stage(machine, request, request.stage, supersede=supersede)
      if primary.status != "completed" or not task.derived_stage or target in self._cancelled:
        return TargetOutcome(parent_id=self.parent_id, target=target, primary=primary)

      logger.info("Chaining %s onto unit %s for target %s", task.derived_stage, primary.unit_id, target)
      derived = await self._run_stage(machine, request, task.derived_stage, derived_from=primary.unit_id)
      return TargetOutcome(parent_id=self.parent_id, target=target, primary=primary, derived=derived)
    except asyncio.CancelledError:
      raise
    except Exception as exc:  # noqa: BLE001
      logger.exception("Pipeline for target %s of parent %s crashed", target, self.parent_id)
      error = error_summary("internal", f"{type(exc).__name__}: {exc}")
      if machine.phase in ("queued", "running"):
        machine.fail(error)
        self._emit(machine)
      return TargetOutcome(parent_id=self.parent_id, target=target, primary=StageOutcome(stage=machine.stage or request.stage, status="failed", unit_id=machine.unit_id, error=error))

  async def _run_stage(self, machine: TargetStateMachine, request: _TargetRequest, stage: str, *, derived_from: str | None = None, supersede: bool = False) -> StageOutcome:
    started = time.monotonic()
    machine.queue(stage)
    self._emit(machine)

    try:
      unit = await self._dispatcher.enqueue(self.parent_id, machine.target, request.model_id, stage=stage, derived_from=derived_from, supersede=supersede)
    except SubmissionError as exc:
      error = {"kind": "rejected", "code": exc.code, "message": str(exc)}
      machine.fail(error)
      self._emit(machine)
      logger.warning("Submission of %s for target %s rejected: %s", stage, machine.target, exc)
      return StageOutcome(stage=stage, status="rejected", error=error)

    machine.start(unit.unit_id)
    self._emit(machine)
    self._poller.ensure_running()

    abandon = asyncio.Event()
    self._abandon[unit.unit_id] = abandon
    if machine.target in self._cancelled:
      abandon.set()

    execution = asyncio.create_task(self._dispatcher.execute(unit), name=f"unit-{unit.unit_id}")
    abandoned = asyncio.create_task(abandon.wait())
    try:
      done, _ = await asyncio.wait({execution, abandoned}, return_when=asyncio.FIRST_COMPLETED)
    finally:
      abandoned.cancel()
      self._abandon.pop(unit.unit_id, None)

    duration = time.monotonic() - started
    request.runtimes[stage] = duration

    if execution in done:
      final: WorkUnit = execution.result()
      if final.status == "completed":
        machine.complete()
      else:
        machine.fail(final.error)
      self._emit(machine)
      logger.info("Stage %s for target %s of parent %s ended %s after %.1fs", stage, machine.target, self.parent_id, final.status, duration)
      status: StageStatus = "completed" if final.status == "completed" else "failed"
      return StageOutcome(stage=stage, status=status, unit_id=unit.unit_id, result_payload=final.result_payload, error=final.error, duration_seconds=duration)

    # Abandoned: the call keeps running; its late result is discarded by the store.
    self._background.add(execution)
    execution.add_done_callback(self._log_abandoned)
    if machine.target in self._cancelled:
      machine.cancel()
      status = "cancelled"
    else:
      machine.stall()
      status = "stalled"
    self._emit(machine)
    logger.warning("Stage %s for target %s of parent %s %s after %.1fs", stage, machine.target, self.parent_id, status, duration)
    return StageOutcome(stage=stage, status=status, unit_id=unit.unit_id, duration_seconds=duration)

  def _on_stall(self, notice: StallNotice) -> None:
    event = self._abandon.get(notice.unit_id)
    if event is not None:
      event.set()

  def _log_abandoned(self, task: asyncio.Task[Any]) -> None:
    self._background.discard(task)
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None:
      logger.error("Abandoned unit execution failed: %s", exc, exc_info=exc)

  def _emit(self, machine: TargetStateMachine) -> None:
    self._last_activity = self._monotonic()
    event = TargetEvent(parent_id=self.parent_id, target=machine.target, phase=machine.phase, stage=machine.stage, unit_id=machine.unit_id, error=machine.error)
    for listener in list(self._listeners):
      try:
        listener(event)
      except Exception:  # noqa: BLE001
        logger.exception("Target listener failed for %s/%s", self.parent_id, machine.target)


class PipelineOrchestrator:
  """Hands out one supervisor (and poller) per parent.

  Supervisors left idle for longer than `idle_ttl_seconds` are dropped the
  next time the registry is consulted, together with their local target state.
  """

  def __init__(
    self,
    dispatcher: JobDispatcher,
    units: WorkUnitsRepository,
    *,
    poll_interval_seconds: float,
    stall_timeout_seconds: float,
    max_targets: int = 20,
    idle_ttl_seconds: float = 3600.0,
    clock: Clock = utc_now,
    monotonic: Callable[[], float] = time.monotonic,
  ) -> None:
    self._dispatcher = dispatcher
    self._units = units
    self._poll_interval = poll_interval_seconds
    self._stall_timeout = stall_timeout_seconds
    self._max_targets = max_targets
    self._idle_ttl = idle_ttl_seconds
    self._clock = clock
    self._monotonic = monotonic
    self._supervisors: dict[str, ParentSupervisor] = {}

  def supervisor(self, parent_id: str) -> ParentSupervisor:
    self._evict_idle()
    supervisor = self._supervisors.get(parent_id)
    if supervisor is None:
      poller = StatusPoller(parent_id, self._units, poll_interval_seconds=self._poll_interval, stall_timeout_seconds=self._stall_timeout, clock=self._clock)
      supervisor = ParentSupervisor(parent_id, self._dispatcher, poller, self._dispatcher.tasks, max_targets=self._max_targets, monotonic=self._monotonic)
      self._supervisors[parent_id] = supervisor
    return supervisor

  def find_supervisor(self, parent_id: str) -> ParentSupervisor | None:
    self._evict_idle()
    return self._supervisors.get(parent_id)

  def run(self, parent_id: str, targets: Iterable[str], model_id: str, stage: str = "translation") -> AsyncIterator[TargetOutcome]:
    return self.supervisor(parent_id).run(targets, model_id, stage)

  async def shutdown(self) -> None:
    for supervisor in list(self._supervisors.values()):
      await supervisor.close()

  def _evict_idle(self) -> None:
    for parent_id, supervisor in list(self._supervisors.items()):
      idle = supervisor.idle_seconds()
      if idle is not None and idle >= self._idle_ttl:
        del self._supervisors[parent_id]
        logger.debug("Dropped supervisor for parent %s after %.0fs idle", parent_id, idle)
