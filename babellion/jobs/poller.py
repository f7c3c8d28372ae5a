"""Background status polling with client-side stall detection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from babellion.jobs.models import Clock, WorkUnit, utc_now
from babellion.storage.units_repo import WorkUnitsRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StallNotice:
  """Emitted once per unit whose liveness timestamp stopped advancing."""

  parent_id: str
  unit_id: str
  target: str
  stage: str
  idle_seconds: float


StallListener = Callable[[StallNotice], None]


class StatusPoller:
  """Polls a parent's units on a fixed interval while any of them is non-terminal.

  A `running` unit idle for longer than the stall window is marked stalled
  locally and excluded from the keep-polling decision. Nothing is written to
  the store; the remote call is only abandoned by whoever listens.
  """

  def __init__(
    self,
    parent_id: str,
    units: WorkUnitsRepository,
    *,
    poll_interval_seconds: float,
    stall_timeout_seconds: float,
    clock: Clock = utc_now,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
  ) -> None:
    self.parent_id = parent_id
    self._units = units
    self._interval = poll_interval_seconds
    self._stall_timeout = stall_timeout_seconds
    self._clock = clock
    self._sleep = sleep
    self._stalled: set[str] = set()
    # Survives clear_stall so a unit never notifies twice.
    self._notified: set[str] = set()
    self._listeners: list[StallListener] = []
    self._task: asyncio.Task[None] | None = None
    # Set when a unit may have appeared after the current tick took its snapshot.
    self._rescan = False

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  def on_stall(self, listener: StallListener) -> None:
    self._listeners.append(listener)

  def is_stalled(self, unit_id: str) -> bool:
    return unit_id in self._stalled

  def clear_stall(self, unit_id: str) -> None:
    """Forget the local stalled marker, e.g. before a retry."""
    self._stalled.discard(unit_id)

  async def tick(self) -> bool:
    """Poll once. Returns True while any unit still warrants polling."""
    units = await self._units.list_units(self.parent_id)
    now = self._clock()
    watching = False

    for unit in units:
      if unit.is_terminal:
        # Terminal units never run again, so their markers can go.
        self._stalled.discard(unit.unit_id)
        self._notified.discard(unit.unit_id)
        continue
      if unit.unit_id in self._stalled:
        continue
      if unit.status == "running" and self._idle_seconds(unit, now) > self._stall_timeout:
        self._mark_stalled(unit, now)
        continue
      watching = True

    return watching

  async def run(self) -> None:
    while True:
      self._rescan = False
      try:
        watching = await self.tick()
      except asyncio.CancelledError:
        raise
      except Exception:  # noqa: BLE001
        logger.exception("Status poll failed for parent %s; retrying", self.parent_id)
        watching = True

      if not watching:
        if self._rescan:
          continue
        logger.debug("No units left to watch for parent %s; polling stopped", self.parent_id)
        return

      await self._sleep(self._interval)

  def ensure_running(self) -> asyncio.Task[None]:
    """Start the background loop, or make an active one poll again before it can stop."""
    if self.running:
      self._rescan = True
    else:
      self._task = asyncio.create_task(self.run(), name=f"poller-{self.parent_id}")
    return self._task

  async def stop(self) -> None:
    if self._task is None:
      return
    self._task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
      await self._task
    self._task = None

  def _idle_seconds(self, unit: WorkUnit, now: datetime) -> float:
    return (now - unit.updated_at).total_seconds()

  def _mark_stalled(self, unit: WorkUnit, now: datetime) -> None:
    self._stalled.add(unit.unit_id)
    if unit.unit_id in self._notified:
      return

    self._notified.add(unit.unit_id)
    idle = self._idle_seconds(unit, now)
    logger.warning("Unit %s target=%s stage=%s stalled after %.1fs without progress", unit.unit_id, unit.target, unit.stage, idle)
    notice = StallNotice(parent_id=self.parent_id, unit_id=unit.unit_id, target=unit.target, stage=unit.stage, idle_seconds=idle)
    for listener in list(self._listeners):
      try:
        listener(notice)
      except Exception:  # noqa: BLE001
        logger.exception("Stall listener failed for unit %s", unit.unit_id)
