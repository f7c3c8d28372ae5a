"""Storage interface for generation work units."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from babellion.jobs.models import UnitStatus, WorkUnit


class WorkUnitsRepository(Protocol):
  """Repository contract for work unit persistence.

  `create_unit` raises AlreadyInFlightError when a non-terminal unit already
  exists for the same (parent, target). `update_unit` is a compare-and-set on
  `expected_status`: it returns None when the stored status differs, and raises
  InvalidTransitionError when the requested status change is not allowed.
  `edit_payload` rewrites the payload of a completed unit without changing its
  status, and raises OutputNotEditableError for any other status.
  """

  async def create_unit(self, unit: WorkUnit) -> WorkUnit:
    """Persist a new unit."""

  async def get_unit(self, unit_id: str) -> WorkUnit | None:
    """Fetch a unit by identifier."""

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
    """Move a unit to a new status when it is still in expected_status."""

  async def edit_payload(self, unit_id: str, edit: Callable[[dict[str, Any]], dict[str, Any]], *, updated_at: datetime | None = None) -> WorkUnit | None:
    """Apply edit to a completed unit's payload; None when the unit does not exist."""

  async def list_units(self, parent_id: str) -> list[WorkUnit]:
    """Return every unit of a parent, oldest first."""

  async def find_active(self, parent_id: str, target: str) -> WorkUnit | None:
    """Return the non-terminal unit for (parent, target), if any."""
