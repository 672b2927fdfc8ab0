from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from chatcoord.api.error_handling import register_exception_handlers
from chatcoord.api.routes import router
from chatcoord.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the job worker with the app and release the store on shutdown."""
    from chatcoord.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.job_worker_enabled:
            await runtime.worker.start()
            logger.info("job_worker_started_on_startup")
    except Exception as exc:
        logger.error("startup_job_worker_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="chatcoord", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the caller's X-Request-ID (or a fresh id) to every log line."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from chatcoord.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = await runtime.store.ping()
    body = {
        "status": "healthy" if store_ok else "unhealthy",
        "version": __version__,
        "checks": {
            "store": {"status": "healthy" if store_ok else "unhealthy", "type": runtime.store.backend},
            "session_cache": {"degraded": runtime.sessions.degraded},
            "job_worker": {"running": runtime.worker.running},
        },
    }
    if not store_ok:
        return JSONResponse(status_code=503, content=body)
    return body
