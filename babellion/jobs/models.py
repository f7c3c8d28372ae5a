"""Domain models for per-target generation work units."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

UnitStatus = Literal["pending", "running", "completed", "failed"]
InvokeMode = Literal["text", "document", "image"]
ErrorKind = Literal["provider_transient", "provider_fatal", "extraction", "empty_output", "superseded", "internal"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "running"})


@dataclass
class WorkUnit:
  """One tracked generation attempt for a single (parent, target) pair."""

  unit_id: str
  parent_id: str
  target: str
  stage: str
  status: UnitStatus
  model_id: str
  created_at: datetime
  updated_at: datetime
  result_payload: dict[str, Any] | None = None
  error: dict[str, Any] | None = None
  derived_from: str | None = None
  superseded_by: str | None = None
  started_at: datetime | None = None
  completed_at: datetime | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_STATUSES

  @property
  def result_ref(self) -> str | None:
    """Reference to the stored payload once the unit has completed."""
    if self.status != "completed" or self.result_payload is None:
      return None
    return f"units/{self.unit_id}/result"


def error_summary(kind: ErrorKind, message: str) -> dict[str, Any]:
  """Build the error dict recorded on a failed unit."""
  return {"kind": kind, "message": message}


Clock = Callable[[], datetime]


def utc_now() -> datetime:
  return datetime.now(UTC)
