from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from tokenauth.api.error_handling import register_exception_handlers
from tokenauth.api.middleware import IdentityMiddleware
from tokenauth.api.routes import router
from tokenauth.logging import get_logger, set_correlation_id
from tokenauth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving so a bad cipher key stops startup."""
    runtime = get_runtime()
    logger.info("tokenauth_started", store_type=runtime.store_type)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tokenauth", version=__version__, lifespan=lifespan)

app.add_middleware(IdentityMiddleware, get_auth=lambda: get_runtime().auth)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with X-Request-ID (client supplied or generated)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_cache_headers(request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)
