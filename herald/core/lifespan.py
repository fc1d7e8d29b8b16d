import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from herald.core.logging import initialize_logging
from herald.notifications.factory import build_notification_engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and run the notification engine for the life of the app."""
  from herald.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("herald.core.lifespan")

  try:
    initialize_logging(settings)
  except RuntimeError:
    # Console logging still works when the log directory is not writable.
    logger.warning("File logging setup failed; continuing with default handlers.", exc_info=True)

  # Tests may pre-install an engine on app.state.
  engine = getattr(app.state, "engine", None)
  if engine is None:
    engine = build_notification_engine(settings)
    app.state.engine = engine

  await engine.start()
  logger.info("Startup complete environment=%s store=%s scheduler_enabled=%s", settings.environment, settings.store_backend, settings.scheduler_enabled)
  try:
    yield
  finally:
    # In-flight dispatches are awaited before the store closes.
    await engine.stop()
    logger.info("Shutdown complete.")
