"""Service functions behind the unit and run endpoints."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from babellion.api.models import (
  OutputTextEditRequest,
  RunRequest,
  RunResponse,
  SourceRequest,
  SourceResponse,
  SuggestionStatusRequest,
  TargetActionResponse,
  TargetStateResponse,
  UnitCreateResponse,
  UnitDetailResponse,
  UnitStatusResponse,
  UnitSubmitRequest,
)
from babellion.core.errors import InvalidTargetError, ModelUnavailableError
from babellion.jobs.edits import replace_text, set_finding_status
from babellion.services.runtime import PipelineRuntime
from babellion.storage.sources import ProofreadingRule, SourceDocument

logger = logging.getLogger(__name__)


def _resolve_model_id(runtime: PipelineRuntime, model_id: str | None) -> str:
  if model_id:
    return model_id
  default = runtime.catalog.default_model()
  if default is None:
    raise ModelUnavailableError("No enabled model is configured.")
  return default.model_id


async def put_source(runtime: PipelineRuntime, parent_id: str, request: SourceRequest) -> SourceResponse:
  rules = tuple(ProofreadingRule(title=rule.title, rule_text=rule.rule_text) for rule in request.rules)
  source = SourceDocument(parent_id=parent_id, text=request.text, image_base64=request.image_base64, mime_type=request.mime_type, rules=rules)
  await runtime.sources.put_source(source)
  logger.info("Registered source for parent %s (image=%s, rules=%d)", parent_id, source.has_image, len(rules))
  return SourceResponse(parent_id=parent_id, has_text=bool(source.text.strip()), has_image=source.has_image, rule_count=len(rules))


async def submit_unit(runtime: PipelineRuntime, parent_id: str, request: UnitSubmitRequest) -> UnitCreateResponse:
  """Create a pending unit and execute it in the background."""
  model_id = _resolve_model_id(runtime, request.model_id)
  unit = await runtime.dispatcher.enqueue(parent_id, request.target, model_id, stage=request.stage, derived_from=request.derived_from)
  runtime.execute_in_background(unit)
  return UnitCreateResponse(unit_id=unit.unit_id, status=unit.status)


async def list_units(runtime: PipelineRuntime, parent_id: str) -> list[UnitStatusResponse]:
  units = await runtime.units.list_units(parent_id)
  return [UnitStatusResponse.from_unit(unit) for unit in units]


async def get_unit(runtime: PipelineRuntime, unit_id: str) -> UnitDetailResponse:
  unit = await runtime.units.get_unit(unit_id)
  if unit is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found.")
  return UnitDetailResponse.from_unit(unit)


async def start_run(runtime: PipelineRuntime, parent_id: str, request: RunRequest) -> RunResponse:
  """Fan a primary stage out over the requested targets without waiting for them."""
  model_id = _resolve_model_id(runtime, request.model_id)
  supervisor = runtime.orchestrator.supervisor(parent_id)
  pipelines = supervisor.start(request.targets, model_id, request.stage)
  logger.info("Run started for parent %s: %d pipeline(s)", parent_id, len(pipelines))
  return RunResponse(parent_id=parent_id, stage=request.stage, model_id=model_id, targets=list(dict.fromkeys(request.targets)))


def list_targets(runtime: PipelineRuntime, parent_id: str) -> list[TargetStateResponse]:
  supervisor = runtime.orchestrator.find_supervisor(parent_id)
  if supervisor is None:
    return []
  return [TargetStateResponse(target=target, **state) for target, state in supervisor.snapshot().items()]


def retry_target(runtime: PipelineRuntime, parent_id: str, target: str) -> TargetActionResponse:
  supervisor = runtime.orchestrator.find_supervisor(parent_id)
  if supervisor is None:
    raise InvalidTargetError(f"Parent {parent_id} has no run to retry.")
  supervisor.retry(target)
  return TargetActionResponse(target=target, accepted=True, phase=supervisor.snapshot()[target]["phase"])


def cancel_target(runtime: PipelineRuntime, parent_id: str, target: str) -> TargetActionResponse:
  supervisor = runtime.orchestrator.find_supervisor(parent_id)
  if supervisor is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No run found for parent.")
  accepted = supervisor.cancel(target)
  phase = supervisor.snapshot().get(target, {}).get("phase", "idle")
  return TargetActionResponse(target=target, accepted=accepted, phase=phase)


async def edit_output_text(runtime: PipelineRuntime, unit_id: str, request: OutputTextEditRequest) -> UnitDetailResponse:
  """Replace a completed unit's text with a manual revision."""
  unit = await runtime.units.edit_payload(unit_id, lambda payload: replace_text(payload, request.text))
  if unit is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found.")
  logger.info("Edited output text of unit %s (%s/%s)", unit_id, unit.parent_id, unit.target)
  return UnitDetailResponse.from_unit(unit)


async def set_suggestion_status(runtime: PipelineRuntime, unit_id: str, index: int, request: SuggestionStatusRequest) -> UnitDetailResponse:
  unit = await runtime.units.edit_payload(unit_id, lambda payload: set_finding_status(payload, index, request.status))
  if unit is None:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unit not found.")
  logger.info("Suggestion %d of unit %s marked %s", index, unit_id, request.status)
  return UnitDetailResponse.from_unit(unit)
