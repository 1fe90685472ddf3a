"""
tourney/main.py
FastAPI application: HTTP surface over the tournament engine.
"""
import os
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from tourney.database import AsyncSessionLocal, close_db, init_db
from tourney.engine import TournamentEngine, build_engine
from tourney.errors import EngineError
from tourney.routes import router
from tourney.tasks.timeout_scheduler import TimeoutScheduler

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


def create_app(
    engine: Optional[TournamentEngine] = None,
    session_factory: Optional[async_sessionmaker] = None,
    manage_database: bool = True,
) -> FastAPI:
    """
    Build the application.

    Tests pass their own engine and session factory and set
    manage_database=False so the lifespan leaves the schema alone.
    """
    engine = engine or build_engine()
    session_factory = session_factory or AsyncSessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting tournament engine...")
        if manage_database:
            try:
                await init_db()
                logger.info("Database connected successfully")
            except Exception as e:
                logger.error(f"Failed to connect to database: {str(e)}")
                raise

        scheduler = None
        if engine.settings.scheduler_enabled:
            scheduler = TimeoutScheduler(engine, session_factory)
            scheduler.start()
        app.state.scheduler = scheduler

        yield

        logger.info("Shutting down tournament engine...")
        if scheduler is not None:
            await scheduler.stop()
        if manage_database:
            try:
                await close_db()
            except Exception as e:
                logger.error(f"Error closing database connection: {str(e)}")

    app = FastAPI(
        title="Tournament Engine API",
        description="Brackets, match lifecycle and payouts",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine

    origins = [o for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        if exc.status_code >= 500:
            logger.error(f"Engine error on {request.url.path}: {exc.code} - {exc.message}")
        else:
            logger.warning(f"Engine error on {request.url.path}: {exc.code} - {exc.message}")
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": "Validation Error",
                "details": [
                    {"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")}
                    for e in exc.errors()
                ]
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        log_id = str(uuid.uuid4())[:8]
        logger.error(f"[{log_id}] Unhandled exception on {request.url.path}: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal Error",
                "message": "An unexpected error occurred. Please try again later.",
                "code": "INTERNAL_ERROR",
                "details": {"log_id": log_id}
            }
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "ok", "scheduler": engine.settings.scheduler_enabled}

    app.include_router(router)
    return app


app = create_app()
