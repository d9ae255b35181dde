from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from storyboard.src.errors import (
    CapabilityError,
    GenerationTimeoutError,
    InputValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    SafetyRejectionError,
)
from storyboard.src.utils.io import ensure_dir, timestamp

from .api.router import api_router
from .deps import get_config

logger = logging.getLogger("storyboard_api")


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(InputValidationError)
    async def input_error(request: Request, exc: InputValidationError) -> JSONResponse:
        return _error(400, exc)

    @app.exception_handler(InvalidTransitionError)
    async def transition_error(request: Request, exc: InvalidTransitionError) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(JobNotFoundError)
    async def job_not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(SafetyRejectionError)
    async def safety_error(request: Request, exc: SafetyRejectionError) -> JSONResponse:
        return _error(422, exc)

    @app.exception_handler(CapabilityError)
    async def capability_error(request: Request, exc: CapabilityError) -> JSONResponse:
        logger.error("Capability %s failed on %s: %s", exc.capability or "<unknown>", request.url.path, exc)
        return _error(502, exc)

    @app.exception_handler(GenerationTimeoutError)
    async def timeout_error(request: Request, exc: GenerationTimeoutError) -> JSONResponse:
        return _error(504, exc)


def create_application() -> FastAPI:
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("SB_LOGLEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    config = get_config()
    app = FastAPI(title="Storyboard API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    media_dir = ensure_dir(Path(config.media.root_dir))
    app.mount(config.media.url_prefix, StaticFiles(directory=str(media_dir)), name="media")

    @app.get("/health", tags=["system"], summary="Health check")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok", "timestamp": timestamp()}

    return app


app = create_application()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )
