"""FastAPI application entry point."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from stocksync import __version__
from stocksync.api.routes import api_router
from stocksync.core.config import settings
from stocksync.core.rate_limit import limiter
from stocksync.db.base import Base
from stocksync.db.session import engine

# Import all models to ensure they're registered with Base.metadata
import stocksync.models  # noqa: F401

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import json as _json
    import sys

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return _json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next):
        # Skip logging for health checks and docs
        if request.url.path in ["/health", "/docs", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"
        terminal = request.headers.get("X-Terminal-Id")
        if terminal:
            client_ip = f"{client_ip} (terminal {terminal})"

        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(
                f"Error: {request.method} {request.url.path} - "
                f"Exception: {e} - Time: {time.time() - start_time:.3f}s - Client: {client_ip}"
            )
            raise

        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            log_level,
            f"{request.method} {request.url.path} - Status: {response.status_code} - "
            f"Time: {time.time() - start_time:.3f}s - Client: {client_ip}",
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting stock sync engine")

    # Create tables if they don't exist (for SQLite dev)
    # In production with PostgreSQL, use Alembic migrations
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    from stocksync.services.scheduler_service import (
        recover_stale_jobs,
        register_default_tasks,
        scheduler,
    )

    # Jobs left in processing by a previous process go back to the queue
    recovered = recover_stale_jobs()
    if recovered:
        logger.info(f"Recovered {recovered} repair jobs left in processing")

    register_default_tasks(scheduler)
    scheduler_task = asyncio.create_task(scheduler.start())

    yield

    scheduler.stop()
    scheduler_task.cancel()
    try:
        await scheduler_task
    except asyncio.CancelledError:
        pass

    logger.info("Shutting down stock sync engine")


app = FastAPI(
    title="Stock Sync Engine",
    description="Inventory deduction and reconciliation for multi-store POS",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Accept", "Origin", "X-Terminal-Id", "X-Request-ID"],
    max_age=600,  # Cache preflight for 10 minutes
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get(f"{settings.api_v1_prefix}/scheduler/status")
def scheduler_status():
    """Get background task scheduler status."""
    from stocksync.services.scheduler_service import scheduler
    return {"tasks": scheduler.get_status()}
