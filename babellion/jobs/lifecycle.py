"""State machines for work units (store side) and targets (caller side)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from babellion.core.errors import InvalidTransitionError
from babellion.jobs.models import UnitStatus

# Store-side lifecycle. Terminal states have no outgoing edges, so a completed
# payload can only be replaced by creating a new unit.
_UNIT_TRANSITIONS: dict[str, frozenset[str]] = {
  "pending": frozenset({"running", "failed"}),
  "running": frozenset({"completed", "failed"}),
  "completed": frozenset(),
  "failed": frozenset(),
}


def can_transition(current: str, requested: str) -> bool:
  """Return True when a unit may move from current to requested status."""
  return requested in _UNIT_TRANSITIONS.get(current, frozenset())


def ensure_transition(unit_id: str, current: str, requested: UnitStatus) -> None:
  """Raise InvalidTransitionError when the status change is not allowed."""
  if not can_transition(current, requested):
    raise InvalidTransitionError(unit_id, current, requested)


TargetPhase = Literal["idle", "queued", "running", "completed", "failed", "stalled", "cancelled", "retried"]

_SETTLED_PHASES: frozenset[str] = frozenset({"completed", "failed", "stalled", "cancelled"})

# Caller-side lifecycle for one target. "stalled" and "cancelled" are local
# conditions that never reach the job store.
_TARGET_TRANSITIONS: dict[str, frozenset[str]] = {
  "idle": frozenset({"queued"}),
  "queued": frozenset({"running", "failed"}),
  "running": frozenset({"completed", "failed", "stalled", "cancelled"}),
  "completed": frozenset({"queued", "retried"}),
  "failed": frozenset({"retried"}),
  "stalled": frozenset({"retried"}),
  "cancelled": frozenset({"retried"}),
  "retried": frozenset({"queued"}),
}


class InvalidTargetPhaseError(Exception):
  """A target phase change is not allowed from its current phase."""


@dataclass
class TargetStateMachine:
  """Tracks the progress of one target through its primary and derived stages."""

  target: str
  phase: TargetPhase = "idle"
  stage: str | None = None
  unit_id: str | None = None
  error: dict[str, Any] | None = None
  history: list[tuple[str, str]] = field(default_factory=list)

  @property
  def settled(self) -> bool:
    return self.phase in _SETTLED_PHASES

  @property
  def retryable(self) -> bool:
    return "retried" in _TARGET_TRANSITIONS[self.phase]

  def _move(self, phase: TargetPhase) -> None:
    if phase not in _TARGET_TRANSITIONS[self.phase]:
      raise InvalidTargetPhaseError(f"Target {self.target!r} cannot move from {self.phase} to {phase}.")
    self.history.append((self.phase, phase))
    self.phase = phase

  def queue(self, stage: str) -> None:
    self._move("queued")
    self.stage = stage
    self.unit_id = None
    self.error = None

  def start(self, unit_id: str) -> None:
    self._move("running")
    self.unit_id = unit_id

  def complete(self) -> None:
    self._move("completed")

  def fail(self, error: dict[str, Any] | None) -> None:
    self._move("failed")
    self.error = error

  def stall(self) -> None:
    self._move("stalled")

  def cancel(self) -> None:
    self._move("cancelled")

  def retry(self) -> None:
    self._move("retried")
