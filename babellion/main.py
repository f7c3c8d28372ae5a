from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from babellion import __version__
from babellion.api.routes import units
from babellion.config import get_settings
from babellion.core.errors import InvalidTransitionError, OutputEditError, SubmissionError
from babellion.core.exceptions import (
  global_exception_handler,
  http_exception_handler,
  output_edit_exception_handler,
  request_validation_exception_handler,
  submission_exception_handler,
  transition_exception_handler,
)
from babellion.core.lifespan import lifespan
from babellion.jobs.lifecycle import InvalidTargetPhaseError

settings = get_settings()

app = FastAPI(title="Babellion", version=__version__, lifespan=lifespan)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"], allow_headers=["content-type", "authorization"])

app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(SubmissionError, submission_exception_handler)
app.add_exception_handler(InvalidTransitionError, transition_exception_handler)
app.add_exception_handler(InvalidTargetPhaseError, transition_exception_handler)
app.add_exception_handler(OutputEditError, output_edit_exception_handler)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": __version__}


app.include_router(units.router, prefix="/v1", tags=["units"])
