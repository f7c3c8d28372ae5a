"""Process-local work unit store, used when no database is configured."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from babellion.core.errors import AlreadyInFlightError, OutputNotEditableError
from babellion.jobs.lifecycle import ensure_transition
from babellion.jobs.models import ACTIVE_STATUSES, UnitStatus, WorkUnit


class InMemoryWorkUnitsRepository:
  """Dictionary-backed repository.

  Every method body runs without awaiting, so each call is atomic with respect
  to other coroutines on the same event loop.
  """

  def __init__(self) -> None:
    self._units: dict[str, WorkUnit] = {}

  async def create_unit(self, unit: WorkUnit) -> WorkUnit:
    active = self._find_active(unit.parent_id, unit.target)
    if active is not None:
      raise AlreadyInFlightError(unit.parent_id, unit.target, active.unit_id)
    self._units[unit.unit_id] = unit
    return unit

  async def get_unit(self, unit_id: str) -> WorkUnit | None:
    return self._units.get(unit_id)

  async def update_unit(
    self,
    unit_id: str,
    *,
    expected_status: UnitStatus,
    status: UnitStatus,
    result_payload: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
    superseded_by: str | None = None,
    started_at: datetime | None = None,
    completed_at: datetime | None = None,
    updated_at: datetime | None = None,
  ) -> WorkUnit | None:
    unit = self._units.get(unit_id)
    if unit is None or unit.status != expected_status:
      return None

    ensure_transition(unit_id, unit.status, status)
    changes: dict[str, Any] = {"status": status, "updated_at": updated_at or datetime.now(UTC)}
    if result_payload is not None:
      changes["result_payload"] = result_payload
    if error is not None:
      changes["error"] = error
    if superseded_by is not None:
      changes["superseded_by"] = superseded_by
    if started_at is not None:
      changes["started_at"] = started_at
    if completed_at is not None:
      changes["completed_at"] = completed_at

    updated = replace(unit, **changes)
    self._units[unit_id] = updated
    return updated

  async def edit_payload(self, unit_id: str, edit: Callable[[dict[str, Any]], dict[str, Any]], *, updated_at: datetime | None = None) -> WorkUnit | None:
    unit = self._units.get(unit_id)
    if unit is None:
      return None
    if unit.status != "completed":
      raise OutputNotEditableError(f"Unit {unit_id} is {unit.status}; only completed output can be edited.")

    updated = replace(unit, result_payload=edit(dict(unit.result_payload or {})), updated_at=updated_at or datetime.now(UTC))
    self._units[unit_id] = updated
    return updated

  async def list_units(self, parent_id: str) -> list[WorkUnit]:
    units = [unit for unit in self._units.values() if unit.parent_id == parent_id]
    return sorted(units, key=lambda unit: unit.created_at)

  async def find_active(self, parent_id: str, target: str) -> WorkUnit | None:
    return self._find_active(parent_id, target)

  def _find_active(self, parent_id: str, target: str) -> WorkUnit | None:
    for unit in self._units.values():
      if unit.parent_id == parent_id and unit.target == target and unit.status in ACTIVE_STATUSES:
        return unit
    return None
