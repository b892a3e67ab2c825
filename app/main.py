import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.config import Settings, get_settings
from app.core.engine import ConversionEngine
from app.core.exceptions import (
    ConflictingExperiment,
    EngineError,
    ExperimentNotActive,
    ExperimentNotFound,
    InvalidTransition,
    ValidationError,
)
from app.core.logging import configure_logging
from app.middleware import TelemetryMiddleware

logger = structlog.get_logger("app")

VERSION = "0.1.0"

ERROR_STATUS_CODES = {
    ValidationError: 422,
    ConflictingExperiment: 409,
    ExperimentNotFound: 404,
    InvalidTransition: 409,
    ExperimentNotActive: 409,
}


def register_exception_handlers(app: FastAPI) -> None:
    async def handle_engine_error(request: Request, exc: EngineError) -> JSONResponse:
        status_code = ERROR_STATUS_CODES.get(type(exc), 400)
        detail = exc.errors if isinstance(exc, ValidationError) else str(exc)
        logger.info(
            "request_rejected",
            path=request.url.path,
            error_type=type(exc).__name__,
            status_code=status_code,
            detail=detail,
        )
        return JSONResponse(status_code=status_code, content={"detail": detail})

    app.add_exception_handler(EngineError, handle_engine_error)


def create_app(
    settings: Optional[Settings] = None, engine: Optional[ConversionEngine] = None
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        configure_logging(settings.LOG_LEVEL, settings.ENVIRONMENT)
        app.state.engine = engine or ConversionEngine(settings)

        stop = asyncio.Event()
        drain_task = asyncio.create_task(app.state.engine.processor.run_forever(stop))
        logger.info(
            "engine_started",
            environment=settings.ENVIRONMENT,
            buffer_capacity=settings.INGESTION_BUFFER_SIZE,
            funnel_steps=settings.FUNNEL_STEPS,
        )
        yield
        # Shutdown
        stop.set()
        await drain_task
        logger.info("engine_stopped", buffer=app.state.engine.buffer.stats().__dict__)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Conversion funnel analytics and A/B experimentation engine",
        version=VERSION,
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(TelemetryMiddleware)
    register_exception_handlers(app)

    # Include routers
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @app.get("/")
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": VERSION,
            "environment": settings.ENVIRONMENT,
        }

    return app


app = create_app()
