"""Generation tasks: prompt construction and output handling per stage."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from babellion.ai import prompts
from babellion.ai.extraction import extract
from babellion.ai.invoker import Prompt, RawOutput
from babellion.ai.providers.base import InlineImage
from babellion.core.errors import InvalidTargetError, UnsupportedStageError
from babellion.jobs.models import InvokeMode, WorkUnit, error_summary
from babellion.storage.sources import SourceDocument

logger = logging.getLogger(__name__)

FINDING_KEYS = ("rule", "original_text", "suggested_change", "rationale")
NO_CHANGES_RULE = "no changes needed"

FindingStatus = Literal["pending", "accepted", "rejected"]


class ProofreadingFinding(BaseModel):
  """One suggested change returned by a structured proofreading stage."""

  rule: str
  original_text: str
  suggested_change: str
  rationale: str = ""
  status: FindingStatus = "pending"
  model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

  @field_validator("rule")
  @classmethod
  def rule_not_blank(cls, value: str) -> str:
    if not value:
      raise ValueError("rule must not be blank")
    return value

  @property
  def is_no_change_marker(self) -> bool:
    return self.rule.lower() == NO_CHANGES_RULE


@dataclass(frozen=True)
class StageResult:
  """Terminal outcome of interpreting one model response."""

  status: Literal["completed", "failed"]
  payload: dict[str, Any] | None = None
  error: dict[str, Any] | None = None

  @classmethod
  def completed(cls, payload: dict[str, Any]) -> StageResult:
    return cls(status="completed", payload=payload)

  @classmethod
  def failed(cls, kind: str, message: str) -> StageResult:
    return cls(status="failed", error=error_summary(kind, message))  # type: ignore[arg-type]


def validate_findings(records: Iterable[Mapping[str, Any]]) -> tuple[list[ProofreadingFinding], int, int]:
  """Validate raw records, returning (findings, no-change markers, dropped)."""
  findings: list[ProofreadingFinding] = []
  markers = 0
  dropped = 0
  for record in records:
    try:
      finding = ProofreadingFinding.model_validate(dict(record))
    except ValidationError:
      dropped += 1
      continue
    if finding.is_no_change_marker:
      markers += 1
      continue
    findings.append(finding)
  return findings, markers, dropped


class GenerationTask(ABC):
  """Describes how one stage talks to the model and judges its output."""

  stage: str
  mode: InvokeMode = "document"
  derived_stage: str | None = None
  upstream_stage: str | None = None
  requires_language = True

  def __init__(self, languages: Mapping[str, str], system_prompt: str | None = None) -> None:
    self._languages = dict(languages)
    self._system_prompt = system_prompt

  @property
  def is_derived(self) -> bool:
    return self.upstream_stage is not None

  def validate_target(self, target: str) -> None:
    """Raise InvalidTargetError when target is not acceptable for this stage."""
    if not target or not target.strip():
      raise InvalidTargetError("Target must be a non-empty string.")
    if self.requires_language and target not in self._languages:
      raise InvalidTargetError(f"Unsupported language for {self.stage}: {target}")

  def validate_source(self, source: SourceDocument) -> None:
    if not source.text.strip():
      raise InvalidTargetError(f"Parent {source.parent_id} has no text to process.")

  def language_name(self, target: str) -> str:
    return self._languages.get(target, target)

  @abstractmethod
  def build_prompt(self, source: SourceDocument, target: str, upstream: WorkUnit | None) -> Prompt:
    """Render the prompt for one target."""

  @abstractmethod
  def interpret(self, output: RawOutput) -> StageResult:
    """Judge a raw model response."""


class _TextOutputTask(GenerationTask):
  """Free-form text: the raw output is the payload, extraction is skipped."""

  def interpret(self, output: RawOutput) -> StageResult:
    if not output.text or not output.text.strip():
      return StageResult.failed("empty_output", "Model returned no text.")
    return StageResult.completed({"text": output.text})


class _FindingsTask(GenerationTask):
  """Structured findings; a well-formed empty answer completes with no records."""

  def interpret(self, output: RawOutput) -> StageResult:
    result = extract(output.text, record_keys=FINDING_KEYS)
    if not result.recognized:
      return StageResult.failed("extraction", "No structured findings could be extracted from the model response.")

    findings, markers, dropped = validate_findings(result.records)
    if dropped:
      logger.warning("Dropped %d malformed finding(s) from %s output", dropped, self.stage)

    if not findings and dropped and not markers:
      return StageResult.failed("extraction", f"All {dropped} finding(s) were missing required fields.")

    outcome = "records" if findings else "empty"
    return StageResult.completed({"records": [finding.model_dump() for finding in findings], "outcome": outcome})


class TranslationTask(_TextOutputTask):
  stage = "translation"
  derived_stage = "proofread"

  def build_prompt(self, source: SourceDocument, target: str, upstream: WorkUnit | None) -> Prompt:
    system = self._system_prompt or prompts.TRANSLATION_SYSTEM_PROMPT
    return Prompt(system=system, user=prompts.translation_message(source.text, self.language_name(target)))


class ProofreadTask(_TextOutputTask):
  stage = "proofread"
  upstream_stage = "translation"

  def build_prompt(self, source: SourceDocument, target: str, upstream: WorkUnit | None) -> Prompt:
    translated = (upstream.result_payload or {}).get("text", "") if upstream else ""
    system = self._system_prompt or prompts.PROOFREAD_SYSTEM_PROMPT
    return Prompt(system=system, user=prompts.proofread_message(source.text, translated, self.language_name(target)))


class ImageTranslationTask(GenerationTask):
  stage = "image_translation"
  mode: InvokeMode = "image"
  derived_stage = "image_proofread"

  def validate_source(self, source: SourceDocument) -> None:
    if not source.has_image:
      raise InvalidTargetError(f"Parent {source.parent_id} has no image to translate.")

  def build_prompt(self, source: SourceDocument, target: str, upstream: WorkUnit | None) -> Prompt:
    template = self._system_prompt or prompts.IMAGE_TRANSLATION_PROMPT
    image = InlineImage(data_base64=source.image_base64 or "", mime_type=source.mime_type)
    return Prompt(system="", user=prompts.fill_language(template, self.language_name(target)), image=image)

  def interpret(self, output: RawOutput) -> StageResult:
    if output.image is None or not output.image.data_base64:
      return StageResult.failed("empty_output", "Model returned no image.")
    payload: dict[str, Any] = {"image_base64": output.image.data_base64, "mime_type": output.image.mime_type}
    if output.text and output.text.strip():
      payload["text"] = output.text
    return StageResult.completed(payload)


class ImageProofreadTask(_FindingsTask):
  stage = "image_proofread"
  mode: InvokeMode = "image"
  upstream_stage = "image_translation"

  def validate_source(self, source: SourceDocument) -> None:
    if not source.has_image:
      raise InvalidTargetError(f"Parent {source.parent_id} has no image to proofread.")

  def build_prompt(self, source: SourceDocument, target: str, upstream: WorkUnit | None) -> Prompt:
    payload = (upstream.result_payload or {}) if upstream else {}
    image = InlineImage(data_base64=payload.get("image_base64", ""), mime_type=payload.get("mime_type", "image/png"))
    language = self.language_name(target)
    system = prompts.fill_language(self._system_prompt or prompts.IMAGE_PROOFREAD_SYSTEM_PROMPT, language)
    return Prompt(system=system, user=f"Proofread the {language} text in this image.", image=image)


class RuleProofreadTask(_FindingsTask):
  stage = "rule_proofread"
  requires_language = False

  def build_prompt(self, source: SourceDocument, target: str, upstream: WorkUnit | None) -> Prompt:
    rules = [(rule.title, rule.rule_text) for rule in source.rules]
    system = self._system_prompt or prompts.RULE_PROOFREAD_SYSTEM_PROMPT
    return Prompt(system=system, user=prompts.rule_proofread_message(source.text, rules))


class TaskRegistry:
  """Stage name to task lookup."""

  def __init__(self, tasks: Iterable[GenerationTask]) -> None:
    self._tasks = {task.stage: task for task in tasks}

  def resolve(self, stage: str) -> GenerationTask:
    task = self._tasks.get(stage)
    if task is None:
      raise UnsupportedStageError(f"Unsupported stage: {stage}")
    return task

  def stages(self) -> list[str]:
    return list(self._tasks)


def build_default_registry(
  languages: Mapping[str, str],
  *,
  translation_system_prompt: str | None = None,
  proofread_system_prompt: str | None = None,
  rule_proofread_system_prompt: str | None = None,
  image_translation_prompt: str | None = None,
) -> TaskRegistry:
  return TaskRegistry(
    [
      TranslationTask(languages, translation_system_prompt),
      ProofreadTask(languages, proofread_system_prompt),
      ImageTranslationTask(languages, image_translation_prompt),
      ImageProofreadTask(languages),
      RuleProofreadTask(languages, rule_proofread_system_prompt),
    ]
  )
