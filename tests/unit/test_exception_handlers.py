"""Unit tests for API error mapping and validation sanitization."""

from __future__ import annotations

import pytest

from babellion.core.errors import (
  AlreadyInFlightError,
  InvalidTargetError,
  ModelUnavailableError,
  OutputEditError,
  OutputNotEditableError,
  ParentNotFoundError,
  SubmissionError,
  UnsupportedStageError,
)
from babellion.core.exceptions import _sanitize_validation_errors, edit_status_code, submission_status_code


def test_sanitize_validation_errors_removes_input_and_context() -> None:
  """Validation errors stay JSON-serializable and never echo the request payload."""
  errors = [{"type": "value_error", "loc": ("body", "rules", 0), "msg": "Value error, Either text or image_base64 must be provided.", "input": {"text": "secret draft"}, "ctx": {"error": ValueError("boom")}}]
  sanitized = _sanitize_validation_errors(errors)
  assert sanitized == [{"type": "value_error", "loc": ["body", "rules", "0"], "msg": "Value error, Either text or image_base64 must be provided."}]


@pytest.mark.parametrize(
  ("exc", "status_code"),
  [
    (InvalidTargetError("bad target"), 400),
    (UnsupportedStageError("bad stage"), 400),
    (ParentNotFoundError("no source"), 404),
    (ModelUnavailableError("disabled"), 422),
    (AlreadyInFlightError("doc-1", "de", "unit-1"), 409),
    (SubmissionError("other"), 400),
  ],
)
def test_submission_status_codes(exc: SubmissionError, status_code: int) -> None:
  assert submission_status_code(exc) == status_code


@pytest.mark.parametrize(("exc", "status_code"), [(OutputEditError("bad index"), 400), (OutputNotEditableError("still running"), 409)])
def test_edit_status_codes(exc: OutputEditError, status_code: int) -> None:
  assert edit_status_code(exc) == status_code
