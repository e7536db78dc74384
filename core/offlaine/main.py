"""OfflAIne Core - FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from offlaine import __version__
from offlaine.api import services as service_store
from offlaine.api.routes import device, models
from offlaine.api.schemas import ErrorResponse, HealthResponse
from offlaine.config import API_PREFIX, HOST, PORT
from offlaine.errors import (
    AlreadyActive,
    BenchmarkInProgress,
    InsufficientStorage,
    InvalidTransition,
    NotFound,
    OfflaineError,
)
from offlaine.utils.logging import logger

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Most specific first
ERROR_STATUS: list[tuple[type[OfflaineError], int]] = [
    (NotFound, 404),
    (AlreadyActive, 409),
    (InvalidTransition, 409),
    (BenchmarkInProgress, 409),
    (InsufficientStorage, 507),
]


def status_for(error: OfflaineError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(f"OfflAIne Core v{__version__} starting...")
    await service_store.get_services()
    logger.info(f"Server running at http://{HOST}:{PORT}")
    yield
    # Cleanup on shutdown
    if service_store.services:
        await service_store.services.shutdown()
    logger.info("OfflAIne Core stopped")


app = FastAPI(
    title="OfflAIne Core",
    description="Offline model acquisition and device capability engine",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routes
app.include_router(models.router, prefix=API_PREFIX)
app.include_router(device.router, prefix=API_PREFIX)


@app.exception_handler(OfflaineError)
async def offlaine_error_handler(request: Request, exc: OfflaineError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    body = ErrorResponse(code=exc.code, detail=str(exc), recoverable=exc.recoverable)
    return JSONResponse(status_code=status, content=body.model_dump())


@app.get(f"{API_PREFIX}/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=__version__)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT)
