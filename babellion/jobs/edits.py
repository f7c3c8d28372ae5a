"""Manual edits of completed output.

Edits rewrite a completed unit's payload in place. They are not status
transitions and never touch units that are still in the pipeline.
"""

from __future__ import annotations

from typing import Any, get_args

from babellion.core.errors import OutputEditError
from babellion.jobs.tasks import FindingStatus

FINDING_STATUSES: tuple[str, ...] = get_args(FindingStatus)


def replace_text(payload: dict[str, Any], text: str) -> dict[str, Any]:
  """Return payload with its free-form text replaced by a manual revision."""
  if "text" not in payload:
    raise OutputEditError("This unit's output has no text to edit.")
  if not text.strip():
    raise OutputEditError("Edited text must not be blank.")
  return {**payload, "text": text, "edited": True}


def set_finding_status(payload: dict[str, Any], index: int, status: str) -> dict[str, Any]:
  """Return payload with one proofreading finding accepted, rejected or reset to pending."""
  if status not in FINDING_STATUSES:
    raise OutputEditError(f"Invalid status {status!r}. Must be one of: {', '.join(FINDING_STATUSES)}.")

  records = payload.get("records")
  if not isinstance(records, list):
    raise OutputEditError("This unit's output has no suggestions.")
  if index < 0 or index >= len(records):
    raise OutputEditError(f"Suggestion index {index} is out of range.")

  updated = [dict(record) for record in records]
  updated[index]["status"] = status
  return {**payload, "records": updated}
