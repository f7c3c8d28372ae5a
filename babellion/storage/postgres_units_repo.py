"""Postgres-backed repository for work units using SQLAlchemy."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from babellion.core.database import get_session_factory
from babellion.core.errors import AlreadyInFlightError, OutputNotEditableError
from babellion.jobs.lifecycle import ensure_transition
from babellion.jobs.models import ACTIVE_STATUSES, UnitStatus, WorkUnit
from babellion.schema.units import WorkUnitRow

logger = logging.getLogger(__name__)


class PostgresWorkUnitsRepository:
  """Persist work units to Postgres.

  Single-flight is enforced by the `ux_work_units_active_target` partial index,
  so two racing submissions cannot both insert a non-terminal row.
  """

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_unit(self, unit: WorkUnit) -> WorkUnit:
    try:
      async with self._session_factory() as session:
        session.add(unit_to_row(unit))
        await session.commit()
    except IntegrityError as exc:
      active = await self.find_active(unit.parent_id, unit.target)
      if active is None:
        raise
      logger.info("Rejected duplicate unit for parent=%s target=%s (active=%s)", unit.parent_id, unit.target, active.unit_id)
      raise AlreadyInFlightError(unit.parent_id, unit.target, active.unit_id) from exc
    return unit

  async def get_unit(self, unit_id: str) -> WorkUnit | None:
    async with self._session_factory() as session:
      row = await session.get(WorkUnitRow, unit_id)
      if row is None:
        return None
      return row_to_unit(row)

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
    async with self._session_factory() as session:
      row = await session.get(WorkUnitRow, unit_id, with_for_update=True)
      if row is None or row.status != expected_status:
        return None

      ensure_transition(unit_id, row.status, status)
      row.status = status
      if result_payload is not None:
        row.result_json = result_payload
      if error is not None:
        row.error_json = error
      if superseded_by is not None:
        row.superseded_by = superseded_by
      if started_at is not None:
        row.started_at = started_at
      if completed_at is not None:
        row.completed_at = completed_at
      row.updated_at = updated_at or datetime.now(UTC)
      session.add(row)
      await session.commit()
      await session.refresh(row)
      return row_to_unit(row)

  async def edit_payload(self, unit_id: str, edit: Callable[[dict[str, Any]], dict[str, Any]], *, updated_at: datetime | None = None) -> WorkUnit | None:
    async with self._session_factory() as session:
      row = await session.get(WorkUnitRow, unit_id, with_for_update=True)
      if row is None:
        return None
      if row.status != "completed":
        raise OutputNotEditableError(f"Unit {unit_id} is {row.status}; only completed output can be edited.")

      # A new dict so the JSONB column is flagged dirty.
      row.result_json = edit(dict(row.result_json or {}))
      row.updated_at = updated_at or datetime.now(UTC)
      session.add(row)
      await session.commit()
      await session.refresh(row)
      return row_to_unit(row)

  async def list_units(self, parent_id: str) -> list[WorkUnit]:
    async with self._session_factory() as session:
      stmt = select(WorkUnitRow).where(WorkUnitRow.parent_id == parent_id).order_by(WorkUnitRow.created_at.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [row_to_unit(row) for row in rows]

  async def find_active(self, parent_id: str, target: str) -> WorkUnit | None:
    async with self._session_factory() as session:
      stmt = select(WorkUnitRow).where(WorkUnitRow.parent_id == parent_id, WorkUnitRow.target == target, WorkUnitRow.status.in_(tuple(ACTIVE_STATUSES))).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return row_to_unit(row)


def unit_to_row(unit: WorkUnit) -> WorkUnitRow:
  return WorkUnitRow(
    unit_id=unit.unit_id,
    parent_id=unit.parent_id,
    target=unit.target,
    stage=unit.stage,
    status=unit.status,
    model_id=unit.model_id,
    result_json=unit.result_payload,
    error_json=unit.error,
    derived_from=unit.derived_from,
    superseded_by=unit.superseded_by,
    created_at=unit.created_at,
    updated_at=unit.updated_at,
    started_at=unit.started_at,
    completed_at=unit.completed_at,
  )


def row_to_unit(row: WorkUnitRow) -> WorkUnit:
  return WorkUnit(
    unit_id=row.unit_id,
    parent_id=row.parent_id,
    target=row.target,
    stage=row.stage,
    status=row.status,  # type: ignore[arg-type]
    model_id=row.model_id,
    created_at=row.created_at,
    updated_at=row.updated_at,
    result_payload=row.result_json,
    error=row.error_json,
    derived_from=row.derived_from,
    superseded_by=row.superseded_by,
    started_at=row.started_at,
    completed_at=row.completed_at,
  )
