"""Lenient JSON helpers for LLM outputs."""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from typing import Any

_FENCE_RE = re.compile(r"^```(?:json)?[ \t]*\r?\n?(.*?)\r?\n?[ \t]*```$", re.DOTALL | re.IGNORECASE)

# Bound the candidate scan so pathological bracket soup stays linear-ish.
MAX_ARRAY_CANDIDATES = 32


def strip_code_fence(raw: str) -> str:
  """Return the inner content of a leading/trailing fenced block, or the stripped text."""
  text = raw.strip()
  match = _FENCE_RE.match(text)
  if match is None:
    return text
  return match.group(1).strip()


def strip_trailing_commas(raw: str) -> str:
  """Drop commas that directly precede `}` or `]`, leaving string literals untouched."""
  kept: list[str] = []
  in_string = False
  escape = False
  length = len(raw)

  for index, char in enumerate(raw):
    if in_string:
      if escape:
        escape = False
      elif char == "\\":
        escape = True
      elif char == '"':
        in_string = False
      kept.append(char)
      continue

    if char == '"':
      in_string = True
    elif char == ",":
      ahead = index + 1
      while ahead < length and raw[ahead].isspace():
        ahead += 1
      if ahead < length and raw[ahead] in "}]":
        continue

    kept.append(char)

  return "".join(kept)


def loads_lenient(raw: str) -> Any:
  """Parse JSON strictly, then once more with trailing commas removed."""
  try:
    return json.loads(raw)
  except json.JSONDecodeError:
    # Strip trailing commas that commonly appear in LLM output.
    cleaned = strip_trailing_commas(raw)
    if cleaned == raw:
      raise
    return json.loads(cleaned)


def match_array(raw: str, start: int) -> int | None:
  """Return the index of the `]` closing the array opened at `start`, if any.

  Brackets inside string literals are ignored. A backslash inside a string
  skips the next character so escaped quotes do not end the literal.
  """
  depth = 0
  in_string = False
  escape = False

  for index in range(start, len(raw)):
    char = raw[index]

    if in_string:
      if escape:
        escape = False
        continue

      if char == "\\":
        escape = True
        continue

      if char == '"':
        in_string = False

      continue

    if char == '"':
      in_string = True
      continue

    if char == "[":
      depth += 1
      continue

    if char == "]":
      depth -= 1

      if depth == 0:
        return index

  return None


def iter_array_candidates(raw: str) -> Iterator[str]:
  """Yield balanced `[...]` substrings, starting from each `[` in turn."""
  start = raw.find("[")
  attempts = 0

  while start != -1 and attempts < MAX_ARRAY_CANDIDATES:
    attempts += 1
    end = match_array(raw, start)

    if end is None:
      start = raw.find("[", start + 1)
      continue

    yield raw[start : end + 1]
    start = raw.find("[", end + 1)

