from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from herald import __version__
from herald.api.routes import notifications, push
from herald.config import get_settings
from herald.core.exceptions import global_exception_handler, http_exception_handler, notification_exception_handler, request_validation_exception_handler
from herald.core.lifespan import lifespan
from herald.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from herald.notifications.contracts import NotificationError

settings = get_settings()

app = FastAPI(title="Herald", version=__version__, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "OPTIONS"], allow_headers=["content-type", "authorization", "x-herald-service-secret", "x-request-id"], expose_headers=["content-length", "x-request-id"])

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(NotificationError, notification_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple liveness status."""
  return {"status": "ok", "version": __version__}


app.include_router(notifications.router, prefix="/v1/notifications", tags=["notifications"])
app.include_router(push.router, prefix="/v1/push", tags=["push"])
