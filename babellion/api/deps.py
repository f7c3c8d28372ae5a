"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from babellion.services.runtime import PipelineRuntime


def get_runtime(request: Request) -> PipelineRuntime:
  """Return the pipeline runtime built during application startup."""
  runtime = getattr(request.app.state, "runtime", None)
  if runtime is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Pipeline runtime is not initialized.")
  return runtime
