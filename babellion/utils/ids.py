"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_unit_id() -> str:
  """Return a new work unit identifier."""
  return str(uuid.uuid4())
