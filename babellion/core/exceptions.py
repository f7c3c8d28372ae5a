import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from babellion.core.errors import (
  AlreadyInFlightError,
  InvalidTargetError,
  InvalidTransitionError,
  ModelUnavailableError,
  OutputEditError,
  OutputNotEditableError,
  ParentNotFoundError,
  SubmissionError,
)
from babellion.jobs.lifecycle import InvalidTargetPhaseError

logger = logging.getLogger("babellion.core.exceptions")

_SUBMISSION_STATUS: tuple[tuple[type[SubmissionError], int], ...] = (
  (InvalidTargetError, status.HTTP_400_BAD_REQUEST),
  (ParentNotFoundError, status.HTTP_404_NOT_FOUND),
  (ModelUnavailableError, status.HTTP_422_UNPROCESSABLE_ENTITY),
  (AlreadyInFlightError, status.HTTP_409_CONFLICT),
)


def _error_payload(detail: Any, code: str) -> dict[str, Any]:
  return {"detail": detail, "code": code}


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key not in {"input", "ctx", "url"}}
    scrubbed["loc"] = [str(part) for part in scrubbed.get("loc", ())]
    sanitized.append(scrubbed)
  return sanitized


def submission_status_code(exc: SubmissionError) -> int:
  for error_type, status_code in _SUBMISSION_STATUS:
    if isinstance(exc, error_type):
      return status_code
  return status.HTTP_400_BAD_REQUEST


async def submission_exception_handler(request: Request, exc: SubmissionError) -> JSONResponse:
  """Map rejected submissions onto client errors."""
  status_code = submission_status_code(exc)
  logger.info("Submission rejected path=%s status_code=%s code=%s detail=%s", request.url.path, status_code, exc.code, exc)
  return JSONResponse(status_code=status_code, content=_error_payload(str(exc), exc.code))


async def transition_exception_handler(request: Request, exc: InvalidTransitionError | InvalidTargetPhaseError) -> JSONResponse:
  logger.warning("Invalid state change path=%s detail=%s", request.url.path, exc)
  return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(str(exc), "INVALID_TRANSITION"))


def edit_status_code(exc: OutputEditError) -> int:
  if isinstance(exc, OutputNotEditableError):
    return status.HTTP_409_CONFLICT
  return status.HTTP_400_BAD_REQUEST


async def output_edit_exception_handler(request: Request, exc: OutputEditError) -> JSONResponse:
  status_code = edit_status_code(exc)
  logger.info("Output edit rejected path=%s status_code=%s code=%s detail=%s", request.url.path, status_code, exc.code, exc)
  return JSONResponse(status_code=status_code, content=_error_payload(str(exc), exc.code))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors without leaking payloads."""
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  logger.warning("Request validation failed path=%s method=%s errors=%s", request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, "VALIDATION_ERROR"))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle HTTPExceptions while avoiding leaking internal diagnostics."""
  if exc.status_code >= 500:
    logger.error("HTTPException path=%s status_code=%s detail=%s", request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", "INTERNAL_ERROR"))
  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, "HTTP_ERROR"))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Catch unhandled errors and return a generic body."""
  logger.error("Global exception path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", "INTERNAL_ERROR"))
