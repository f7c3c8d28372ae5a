from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from babellion.core.database import Base


class WorkUnitRow(Base):
  __tablename__ = "work_units"
  __table_args__ = (
    Index("ix_work_units_parent_created", "parent_id", "created_at"),
    # At most one non-terminal unit per (parent, target).
    Index("ux_work_units_active_target", "parent_id", "target", unique=True, postgresql_where=text("status IN ('pending', 'running')")),
  )

  unit_id: Mapped[str] = mapped_column(String, primary_key=True)
  parent_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  target: Mapped[str] = mapped_column(String, nullable=False)
  stage: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  model_id: Mapped[str] = mapped_column(String, nullable=False)
  result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  error_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  derived_from: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  superseded_by: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
