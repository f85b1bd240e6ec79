"""FastAPI application for video-clipper."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api import router as api_router
from .config import ensure_dirs, get_log_level
from .core.scheduler import CleanupScheduler
from .errors import ErrorKind, PipelineError
from .services import build_services

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.EXTERNAL_FAILURE: 502,
    ErrorKind.PARSE_FAILURE: 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    ensure_dirs()

    services = build_services()
    app.state.services = services

    # Start cleanup scheduler
    cleanup_scheduler = CleanupScheduler(purge_cache=services.cache.purge_expired)
    await cleanup_scheduler.start()

    yield

    # Stop cleanup scheduler
    await cleanup_scheduler.stop()
    await services.aclose()


# Create FastAPI app with lifespan
app = FastAPI(
    title="Video Clipper",
    description="Video ingestion, transcription and clip extraction pipeline",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map pipeline errors to HTTP status codes without leaking tracebacks."""
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    return JSONResponse(status_code=status_code, content={"success": False, "error": exc.to_dict()})


# Include REST API routes
app.include_router(api_router, prefix="/api", tags=["API"])


def main():
    """Run the server."""
    import uvicorn

    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "video_clipper.app:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
    )


if __name__ == "__main__":
    main()
