"""Domain exceptions shared by the dispatcher, job store and model invoker."""

from __future__ import annotations

from typing import Literal

ProviderErrorKind = Literal["transient", "fatal"]


class SubmissionError(Exception):
  """A submission was rejected before any work unit was created."""

  code = "SUBMISSION_REJECTED"


class InvalidTargetError(SubmissionError):
  """The requested target is not valid for the requested stage."""

  code = "INVALID_TARGET"


class UnsupportedStageError(InvalidTargetError):
  """The requested stage has no registered task."""


class ParentNotFoundError(SubmissionError):
  """No source content is registered for the parent."""

  code = "PARENT_NOT_FOUND"


class ModelUnavailableError(SubmissionError):
  """The model id is unknown, disabled or cannot serve the requested mode."""

  code = "MODEL_UNAVAILABLE"


class AlreadyInFlightError(SubmissionError):
  """A non-terminal unit already exists for the (parent, target) pair."""

  code = "ALREADY_IN_FLIGHT"

  def __init__(self, parent_id: str, target: str, unit_id: str | None = None) -> None:
    self.parent_id = parent_id
    self.target = target
    self.unit_id = unit_id
    super().__init__(f"Target {target!r} of parent {parent_id} already has unit {unit_id} in flight.")


class InvalidTransitionError(Exception):
  """A status change would violate the work unit lifecycle."""

  def __init__(self, unit_id: str, current: str, requested: str) -> None:
    self.unit_id = unit_id
    self.current = current
    self.requested = requested
    super().__init__(f"Unit {unit_id} cannot move from {current} to {requested}.")


class ProviderError(Exception):
  """Transport or provider failure reported by the model invoker."""

  def __init__(self, message: str, *, kind: ProviderErrorKind = "fatal", status_code: int | None = None) -> None:
    self.kind: ProviderErrorKind = kind
    self.status_code = status_code
    super().__init__(message)

  @property
  def transient(self) -> bool:
    return self.kind == "transient"


class OutputEditError(Exception):
  """A manual edit of a unit's output was rejected."""

  code = "INVALID_EDIT"


class OutputNotEditableError(OutputEditError):
  """Only completed output can be edited."""

  code = "OUTPUT_NOT_EDITABLE"
