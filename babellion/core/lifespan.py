import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from babellion.core.database import create_schema, dispose_engine
from babellion.core.logging import initialize_logging
from babellion.services.runtime import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, the database schema and the pipeline runtime."""
  from babellion.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("babellion.core.lifespan")

  try:
    initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:  # noqa: BLE001
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  if settings.pg_dsn:
    # Without the table the Postgres store cannot serve any request.
    await create_schema()
    logger.info("Work unit schema ensured.")

  # Tests may install their own runtime before startup.
  if getattr(app.state, "runtime", None) is None:
    app.state.runtime = build_runtime(settings)

  try:
    yield
  finally:
    await app.state.runtime.shutdown()
    await dispose_engine()
    logger.info("Shutdown complete.")
