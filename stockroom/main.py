from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from stockroom.config import settings
from stockroom.api.v1.router import api_router
from stockroom.core.logging import configure_logging
from stockroom.exceptions import (
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
    PersistenceError,
    StockroomError,
    ValidationError,
)
from stockroom.factory import create_services
from stockroom.jobs.scheduler import start_scheduler, shutdown_scheduler, get_job_status


logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Request could not be processed, please retry"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables
    - Build the service graph (one instance of each service)
    - Start background scheduler
    """
    from stockroom.database import init_db, engine, async_session_factory

    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    await init_db(engine)
    app.state.session_factory = async_session_factory
    app.state.services = create_services(async_session_factory)

    start_scheduler(app.state.services.reservations)

    yield

    # Shutdown
    shutdown_scheduler()
    await engine.dispose()
    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Inventory", "description": "Stock levels, adjustments, movement history and alerts"},
    {"name": "Reservations", "description": "Time-boxed cart holds against stock"},
    {"name": "Orders", "description": "Order placement with all-or-nothing stock deduction, status lifecycle"},
]


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=OPENAPI_TAGS,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)
    register_exception_handlers(app)

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint with database validation."""
        health_status = {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "database": "unknown",
                "scheduler": get_job_status(),
            }
        }

        try:
            async with request.app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
            health_status["checks"]["database"] = "connected"
        except Exception as e:
            logger.error(f"Health check database error: {e}")
            health_status["status"] = "unhealthy"
            health_status["checks"]["database"] = "unreachable"

        if health_status["status"] == "unhealthy":
            return JSONResponse(status_code=503, content=health_status)
        return health_status

    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Map service errors to HTTP responses without leaking internal detail."""

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.message, "error": type(exc).__name__, "errors": exc.errors},
        )

    @app.exception_handler(InsufficientStockError)
    async def insufficient_stock_handler(request: Request, exc: InsufficientStockError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": exc.message, "error": type(exc).__name__, **exc.details},
        )

    @app.exception_handler(ConcurrencyConflictError)
    async def conflict_handler(request: Request, exc: ConcurrencyConflictError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": RETRY_MESSAGE, "error": type(exc).__name__},
        )

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": RETRY_MESSAGE, "error": type(exc).__name__},
        )

    @app.exception_handler(StockroomError)
    async def stockroom_error_handler(request: Request, exc: StockroomError):
        logger.error(f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": exc.message, "error": type(exc).__name__},
        )


app = create_app()
