import logging

from fastapi import APIRouter, Depends, status

from babellion.api.deps import get_runtime
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
from babellion.services import units as unit_service
from babellion.services.runtime import PipelineRuntime

router = APIRouter()
logger = logging.getLogger("babellion.api.routes.units")


@router.put("/parents/{parent_id}/source", response_model=SourceResponse)
async def put_source(
  parent_id: str,
  request: SourceRequest,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> SourceResponse:
  """Register the content a parent's targets are generated from."""
  return await unit_service.put_source(runtime, parent_id, request)


@router.post("/parents/{parent_id}/units", response_model=UnitCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_unit(
  parent_id: str,
  request: UnitSubmitRequest,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> UnitCreateResponse:
  """Submit one target; the unit runs in the background."""
  return await unit_service.submit_unit(runtime, parent_id, request)


@router.get("/parents/{parent_id}/units", response_model=list[UnitStatusResponse])
async def list_units(
  parent_id: str,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> list[UnitStatusResponse]:
  """List every unit of a parent, oldest first."""
  return await unit_service.list_units(runtime, parent_id)


@router.get("/units/{unit_id}", response_model=UnitDetailResponse)
async def get_unit(
  unit_id: str,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> UnitDetailResponse:
  return await unit_service.get_unit(runtime, unit_id)


@router.post("/parents/{parent_id}/runs", response_model=RunResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_run(
  parent_id: str,
  request: RunRequest,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> RunResponse:
  """Fan a primary stage out across targets; derived stages chain automatically."""
  return await unit_service.start_run(runtime, parent_id, request)


@router.get("/parents/{parent_id}/targets", response_model=list[TargetStateResponse])
async def list_targets(
  parent_id: str,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> list[TargetStateResponse]:
  """Per-target client state, including local stalls."""
  return unit_service.list_targets(runtime, parent_id)


@router.post("/parents/{parent_id}/targets/{target}/retry", response_model=TargetActionResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_target(
  parent_id: str,
  target: str,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> TargetActionResponse:
  return unit_service.retry_target(runtime, parent_id, target)


@router.post("/parents/{parent_id}/targets/{target}/cancel", response_model=TargetActionResponse)
async def cancel_target(
  parent_id: str,
  target: str,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> TargetActionResponse:
  """Stop tracking a target; the in-flight model call is not interrupted."""
  return unit_service.cancel_target(runtime, parent_id, target)


@router.patch("/units/{unit_id}/output", response_model=UnitDetailResponse)
async def edit_output_text(
  unit_id: str,
  request: OutputTextEditRequest,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> UnitDetailResponse:
  """Manually revise a completed unit's text. The unit's status is unchanged."""
  return await unit_service.edit_output_text(runtime, unit_id, request)


@router.patch("/units/{unit_id}/output/suggestions/{index}", response_model=UnitDetailResponse)
async def set_suggestion_status(
  unit_id: str,
  index: int,
  request: SuggestionStatusRequest,
  runtime: PipelineRuntime = Depends(get_runtime),  # noqa: B008
) -> UnitDetailResponse:
  return await unit_service.set_suggestion_status(runtime, unit_id, index, request)
