import logging
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.api import admin, auth, gdpr, training, webhooks
from app.config import settings
from app.errors import LifecycleError, RateLimitError

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Fitness Data Lifecycle", version="0.1.0")


# =============================================================================
# CSRF Origin Validation Middleware
# =============================================================================


class CSRFOriginMiddleware(BaseHTTPMiddleware):
    """
    Validate Origin/Referer headers on cookie-authenticated state-changing requests.

    - POST, PUT, PATCH, DELETE must include a matching Origin or Referer header
    - GET, HEAD, OPTIONS are always allowed (safe methods)
    - Bearer-token requests carry no ambient credentials and are allowed
    - Webhooks and signed download links are exempt
    """

    SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
    EXEMPT_PATHS = {"/health"}
    EXEMPT_PREFIXES = ("/webhooks/", "/gdpr/exports/download/")

    def _reject(self, reason: str, request: Request, value: str | None = None) -> JSONResponse:
        logger.warning(
            "CSRF %s: value=%s, expected=%s, path=%s",
            reason,
            value,
            request.headers.get("host", ""),
            request.url.path,
        )
        return JSONResponse(status_code=403, content={"detail": "Origin validation failed"})

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if (
            request.method in self.SAFE_METHODS
            or path in self.EXEMPT_PATHS
            or path.startswith(self.EXEMPT_PREFIXES)
            or request.headers.get("authorization", "").lower().startswith("bearer ")
        ):
            return await call_next(request)

        expected_host = request.headers.get("host", "")

        # Check Origin header first, fall back to Referer
        origin = request.headers.get("origin")
        if origin:
            if urlparse(origin).netloc != expected_host:
                return self._reject("origin mismatch", request, origin)
            return await call_next(request)

        referer = request.headers.get("referer")
        if referer:
            if urlparse(referer).netloc != expected_host:
                return self._reject("referer mismatch", request, referer)
            return await call_next(request)

        return self._reject("missing origin/referer", request)


app.add_middleware(CSRFOriginMiddleware)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    """Map lifecycle errors to JSON with the error's status code."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Include routers
app.include_router(auth.router)
app.include_router(gdpr.router)
app.include_router(training.router)
app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
