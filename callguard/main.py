"""
Callguard - Main Application Entry Point
FastAPI adapter over the in-process spam scoring engine
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callguard.api.health import router as health_router
from callguard.api.routes import router as api_router
from callguard.config import get_settings
from callguard.scoring.fusion_engine import build_engine
from callguard.utils.logging import setup_logging

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events"""
    # Startup
    setup_logging(settings.log_level, settings.log_format)
    logger.info(
        "Starting Callguard",
        app_name=settings.app_name,
        environment=settings.app_env,
        debug=settings.debug
    )

    app.state.engine = build_engine(settings)
    app.state.engine.metrics.increment("app.startup")

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down Callguard")
    engine = app.state.engine
    if engine.model_path:
        try:
            engine.scorer.save(engine.model_path)
        except OSError as e:
            logger.error("Failed to persist learned model", path=engine.model_path, error=str(e))

    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""

    app = FastAPI(
        title="Callguard API",
        description="Multi-signal spam scoring for calls and text messages",
        version="1.0.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan
    )

    # CORS Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"] + (["*"] if settings.debug else []),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, dict) else {"code": "HTTP_ERROR", "message": str(exc.detail)}
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": detail, "data": None}
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            path=request.url.path,
            method=request.method
        )
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred" if not settings.debug else str(exc)
                },
                "data": None
            }
        )

    # Include routers
    app.include_router(health_router, tags=["Health"])
    app.include_router(api_router, prefix=settings.api_prefix, tags=["API"])

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "callguard.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
