"""MediaForge — FastAPI Application.

This module defines the application factory, all REST API routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- A :class:`~mediaforge.core.orchestrator.GenerationOrchestrator` is created
  in the lifespan handler and stored on ``app.state``.  Starting it restores
  the persisted job table and spawns the per-mode worker pools; stopping it
  flushes the table back to disk.
- Route handlers never wait for generation.  ``POST /api/generate`` returns
  ``202`` as soon as the job is queued; clients poll
  ``GET /api/jobs/{id}`` or follow the Server-Sent Events stream.
- Result URLs are signed and short-lived.  ``GET /api/assets/{id}`` checks the
  signature before serving bytes.
- Every orchestrator error maps to a JSON ``{"error": ...}`` body with a
  fixed status code (see the exception handlers below).

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
POST      ``/api/generate``             Submit a generation job (202)
GET       ``/api/jobs/{id}``            Job status, progress, signed URL
DELETE    ``/api/jobs/{id}``            Cancel a job (idempotent)
GET       ``/api/jobs/{id}/events``     Server-Sent Events status stream
GET       ``/api/assets/{id}``          Serve a stored asset (signed)
GET       ``/api/health``               Intake state and queue depths
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    mediaforge

Direct invocation::

    python -m mediaforge.api.main
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from mediaforge import __version__
from mediaforge.api.models import GenerateRequest
from mediaforge.core.backends import ModelBackend
from mediaforge.core.config import MediaforgeConfig, config
from mediaforge.core.errors import (
    AssetNotFound,
    InvalidSignature,
    JobNotFound,
    RateLimited,
    Rejected,
    ServiceUnavailable,
    ValidationError,
)
from mediaforge.core.jobs import Job, Mode
from mediaforge.core.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


def _job_view(orchestrator: GenerationOrchestrator, job: Job) -> dict:
    """Client-facing view of a job.  Internal failure detail is never included."""
    view: dict = {"jobId": job.id, "status": job.status.value}
    if job.progress:
        view["progress"] = job.progress
    url = orchestrator.signed_url(job)
    if url:
        view["url"] = url
        view["mime"] = job.mime
    if job.reason:
        view["reason"] = job.reason
    return view


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _register_error_handlers(app: FastAPI) -> None:
    """Map orchestrator errors to JSON responses."""

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request", details=jsonable_encoder(exc.errors()))

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(Rejected)
    async def rejected_handler(request: Request, exc: Rejected):
        return _error(422, exc.reason, reason=exc.reason, jobId=exc.job_id)

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited):
        retry_after = max(1, math.ceil(exc.retry_after))
        response = _error(429, "Rate limit exceeded", retryAfter=retry_after)
        response.headers["Retry-After"] = str(retry_after)
        return response

    @app.exception_handler(ServiceUnavailable)
    async def unavailable_handler(request: Request, exc: ServiceUnavailable):
        return _error(503, str(exc))

    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(request: Request, exc: JobNotFound):
        return _error(404, "Job not found")

    @app.exception_handler(AssetNotFound)
    async def asset_not_found_handler(request: Request, exc: AssetNotFound):
        return _error(404, "Asset not found")

    @app.exception_handler(InvalidSignature)
    async def invalid_signature_handler(request: Request, exc: InvalidSignature):
        return _error(403, str(exc))


def create_app(
    app_config: MediaforgeConfig | None = None,
    backends: dict[Mode, ModelBackend] | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        app_config: Configuration to use.  Defaults to the global ``config``.
        backends: Optional ``Mode -> ModelBackend`` table overriding the
            configured backends (used by tests).

    Returns:
        The configured application.  The orchestrator is created when the
        application starts.
    """
    settings = app_config or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # --- Startup -------------------------------------------------------
        orchestrator = GenerationOrchestrator.from_config(settings, backends=backends)
        await orchestrator.start()
        app.state.orchestrator = orchestrator

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        await orchestrator.stop()

    app = FastAPI(
        title="MediaForge",
        description="Moderated, queued generation jobs for image, video, audio and web modes.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow cross-origin requests so a separately served UI can call the API.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)

    def orchestrator_of(request: Request) -> GenerationOrchestrator:
        return request.app.state.orchestrator

    @app.post("/api/generate", status_code=202)
    async def generate(req: GenerateRequest, request: Request) -> dict:
        """Submit a generation job.

        The caller is identified by the ``X-User-Id`` header, falling back to
        the client address.  Moderation runs before the job is queued.

        Returns:
            ``{"jobId": ...}`` with status 202.
        """
        user_id = request.headers.get("x-user-id") or (
            request.client.host if request.client else "anonymous"
        )
        job_id = orchestrator_of(request).submit(req.to_generation_request(user_id))
        return {"jobId": job_id}

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str, request: Request) -> dict:
        """Return status, progress and, once succeeded, a signed URL and mime type."""
        orchestrator = orchestrator_of(request)
        return _job_view(orchestrator, orchestrator.get_status(job_id))

    @app.delete("/api/jobs/{job_id}")
    async def cancel_job(job_id: str, request: Request) -> dict:
        """Cancel a job.  Always 200; terminal and unknown jobs are left untouched."""
        try:
            job = orchestrator_of(request).cancel(job_id)
        except JobNotFound:
            return {"jobId": job_id, "status": None}
        return {"jobId": job.id, "status": job.status.value}

    @app.get("/api/jobs/{job_id}/events")
    async def job_events(job_id: str, request: Request) -> StreamingResponse:
        """Stream job snapshots as Server-Sent Events until the job is terminal."""
        orchestrator = orchestrator_of(request)
        orchestrator.get_status(job_id)

        async def stream() -> AsyncIterator[str]:
            async for job in orchestrator.subscribe(job_id):
                yield f"data: {json.dumps(_job_view(orchestrator, job))}\n\n"

        return StreamingResponse(stream(), media_type="text/event-stream")

    @app.get("/api/assets/{asset_id}")
    async def get_asset(asset_id: str, expires: int, signature: str, request: Request) -> Response:
        """Serve a stored asset if the URL signature is valid and unexpired."""
        data, mime = orchestrator_of(request).gateway.open(asset_id, expires, signature)
        return Response(content=data, media_type=mime)

    @app.get("/api/health")
    async def health(request: Request) -> dict:
        """Report whether submissions are accepted and the depth of every queue."""
        return {"status": "ok", "version": __version__, **orchestrator_of(request).health()}

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~mediaforge.core.config.config`
    (``MEDIAFORGE_SERVER_HOST``, ``MEDIAFORGE_SERVER_PORT``,
    ``MEDIAFORGE_LOG_LEVEL``).

    This function is registered as the ``mediaforge`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "mediaforge.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
