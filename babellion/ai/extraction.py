"""Turn free-form model text into a flat list of structured records.

The producing model is unreliable rather than hostile: it wraps JSON in
markdown fences, surrounds it with prose, and picks between several top-level
shapes. Extraction therefore never raises. Callers receive an
`ExtractionResult` and must treat "no records" as a soft failure that is
distinct from an invoker error.

Recognized shapes, tried in order:

1. `[{...}, ...]` whose first element looks like a record  -> `RecordList`
2. `[{"results": [...]}, ...]`                              -> `NestedResults`
3. `{"results": [...]}`                                      -> `ResultsObject`
4. anything else                                             -> `Unrecognized`
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from babellion.ai.json_parser import iter_array_candidates, loads_lenient, strip_code_fence

logger = logging.getLogger(__name__)

Record = dict[str, Any]

_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class RecordList:
  records: list[Record]


@dataclass(frozen=True)
class NestedResults:
  records: list[Record]


@dataclass(frozen=True)
class ResultsObject:
  records: list[Record]


@dataclass(frozen=True)
class Unrecognized:
  value: Any = field(repr=False)


DecodedShape = RecordList | NestedResults | ResultsObject | Unrecognized


@dataclass(frozen=True)
class ExtractionResult:
  """Records pulled from a model response plus how they were found."""

  records: list[Record]
  parsed: bool
  shape: DecodedShape | None = None

  @property
  def recognized(self) -> bool:
    """True when the text decoded into one of the supported shapes."""
    return self.parsed and self.shape is not None and not isinstance(self.shape, Unrecognized)

  @property
  def is_empty(self) -> bool:
    return not self.records


_NOT_PARSED = ExtractionResult(records=[], parsed=False, shape=None)


def _results_list(value: Any) -> list[Any] | None:
  if isinstance(value, dict) and isinstance(value.get("results"), list):
    return value["results"]
  return None


def _looks_like_record(item: Any, record_keys: frozenset[str] | None) -> bool:
  if not isinstance(item, dict):
    return False
  if record_keys:
    return any(key in item for key in record_keys)
  # Without a key hint, anything except a results wrapper counts as a record.
  return _results_list(item) is None


def classify_shape(value: Any, record_keys: Iterable[str] | None = None) -> DecodedShape:
  """Resolve a decoded JSON value to one of the recognized shapes."""
  keys = frozenset(record_keys) if record_keys else None

  if isinstance(value, list):
    if not value:
      return RecordList(records=[])

    first = value[0]
    if all(isinstance(item, dict) for item in value) and _looks_like_record(first, keys):
      return RecordList(records=list(value))

    nested = _results_list(first)
    if nested is not None:
      return NestedResults(records=[item for item in nested if isinstance(item, dict)])

    return Unrecognized(value=value)

  results = _results_list(value)
  if results is not None:
    return ResultsObject(records=[item for item in results if isinstance(item, dict)])

  return Unrecognized(value=value)


def _result_for(value: Any, record_keys: Iterable[str] | None) -> ExtractionResult:
  shape = classify_shape(value, record_keys)
  if isinstance(shape, Unrecognized):
    return ExtractionResult(records=[], parsed=True, shape=shape)
  return ExtractionResult(records=shape.records, parsed=True, shape=shape)


def _scan_for_array(cleaned: str, record_keys: Iterable[str] | None) -> ExtractionResult:
  """Try each balanced array candidate, preferring the first recognized one."""
  fallback: ExtractionResult | None = None

  for candidate in iter_array_candidates(cleaned):
    try:
      value = loads_lenient(candidate)
    except json.JSONDecodeError:
      continue

    result = _result_for(value, record_keys)
    if result.recognized:
      return result
    if fallback is None:
      fallback = result

  return fallback or _NOT_PARSED


def extract(raw_text: str | None, *, record_keys: Iterable[str] | None = None) -> ExtractionResult:
  """Extract records from raw model text. Never raises."""
  if not raw_text or not raw_text.strip():
    return _NOT_PARSED

  try:
    cleaned = strip_code_fence(raw_text)

    try:
      value = loads_lenient(cleaned)
    except json.JSONDecodeError:
      result = _scan_for_array(cleaned, record_keys)
    else:
      result = _result_for(value, record_keys)
  except Exception:  # noqa: BLE001
    logger.warning("Structured extraction crashed; treating response as unparsed: %r", raw_text[:_PREVIEW_CHARS], exc_info=True)
    return _NOT_PARSED

  if not result.recognized:
    logger.warning("Could not find a results array in model response: %r", raw_text[:_PREVIEW_CHARS])

  return result


def extract_records(raw_text: str | None, *, record_keys: Iterable[str] | None = None) -> list[Record]:
  """Convenience wrapper returning only the record list."""
  return extract(raw_text, record_keys=record_keys).records
