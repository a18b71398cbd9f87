"""
Exam Gate - FastAPI Application Entry Point.

This is the main application module that:
1. Initializes the FastAPI app with CORS middleware
2. Sets up structured JSON logging
3. Implements request ID middleware (X-Request-ID header)
4. Maps domain errors to {"error": CODE, ...} responses
5. Runs the periodic expiry sweep for the lifetime of the app
6. Provides health check endpoints

The application follows a modular architecture:
- routes/: API endpoint handlers
- models/: SQLAlchemy ORM models
- services/: PIN registry, attempts, answers, scoring, integrity, analytics
- client/: async candidate-side client (integrity collector, session timer)
- logging_config.py: Structured logging configuration
- database.py: Database connection management
"""

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from exam_gate import settings
from exam_gate.database import SessionLocal, create_tables
from exam_gate.errors import ServiceError
from exam_gate.logging_config import (
    setup_logging, get_logger, log_with_context,
    request_id_var, generate_request_id
)
from exam_gate.routes import admin, attempts, pins
from exam_gate.services.scoring import sweep_expired

# Import all models so they are registered with Base.metadata
import exam_gate.models  # noqa: F401

# ──────────────────────────────────────────────────────────────
# Initialize structured logging BEFORE anything else
# ──────────────────────────────────────────────────────────────
setup_logging()
logger = get_logger("http")
sweep_logger = get_logger("sweep")


def run_sweep_once():
    """One expiry sweep in its own session."""
    db = SessionLocal()
    try:
        return sweep_expired(db)
    finally:
        db.close()


async def expiry_sweep_loop(interval_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(run_sweep_once)
        except SQLAlchemyError:
            log_with_context(sweep_logger, "ERROR", "Expiry sweep failed", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Auto-create tables for SQLite local development
    if settings.DATABASE_URL.startswith("sqlite"):
        logger.info("Using SQLite, creating tables directly")
        create_tables()

    sweep_task = None
    if settings.EXPIRY_SWEEP_INTERVAL_SECONDS > 0:
        sweep_task = asyncio.create_task(expiry_sweep_loop(settings.EXPIRY_SWEEP_INTERVAL_SECONDS))
        log_with_context(sweep_logger, "INFO", "Expiry sweep scheduled",
            extra_data={"interval_seconds": settings.EXPIRY_SWEEP_INTERVAL_SECONDS})
    try:
        yield
    finally:
        if sweep_task:
            sweep_task.cancel()
            try:
                await sweep_task
            except asyncio.CancelledError:
                pass


# ──────────────────────────────────────────────────────────────
# Create FastAPI application
# ──────────────────────────────────────────────────────────────
app = FastAPI(
    title="Exam Gate",
    description=(
        "PIN-gated exam attempts with autosave, server-enforced timing, "
        "exactly-once scoring, integrity signals and item analytics."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ──────────────────────────────────────────────────────────────
# CORS Middleware
#
# The candidate page and admin console are served from another origin.
# In production, restrict origins to the actual frontend domain.
# ──────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"]
)


# ──────────────────────────────────────────────────────────────
# Request ID Middleware
#
# Generates a unique UUID per incoming request and:
# 1. Stores it in a context variable (available to all log entries)
# 2. Returns it in the X-Request-ID response header
# 3. Logs request start/end with latency measurement
# ──────────────────────────────────────────────────────────────
@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    req_id = generate_request_id()
    request_id_var.set(req_id)
    start_time = time.time()

    log_with_context(logger, "INFO",
        f"Request started: {request.method} {request.url.path}",
        context={"request_id": req_id},
        extra_data={
            "ip": request.client.host if request.client else "unknown",
            "user_agent": request.headers.get("user-agent", ""),
        })

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000
    response.headers["X-Request-ID"] = req_id

    log_with_context(logger, "INFO",
        f"Request completed: {request.method} {request.url.path} → {response.status_code}",
        context={"request_id": req_id},
        extra_data={
            "duration_ms": round(duration_ms, 2),
            "status_code": response.status_code
        })

    return response


# ──────────────────────────────────────────────────────────────
# Error handlers
#
# Domain errors carry their own code and status; anything else is an
# infrastructure failure and is never echoed to the caller.
# ──────────────────────────────────────────────────────────────
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    log_with_context(logger, "INFO" if exc.status_code < 500 else "ERROR",
        f"{request.method} {request.url.path} rejected: {exc.code}",
        extra_data={"status_code": exc.status_code})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "INVALID_INPUT", "details": details})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    log_with_context(get_logger("db"), "ERROR",
        f"Database error on {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log_with_context(logger, "ERROR",
        f"Unhandled error on {request.method} {request.url.path}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "INTERNAL_ERROR"})


# ──────────────────────────────────────────────────────────────
# Register API routes
# ──────────────────────────────────────────────────────────────
app.include_router(pins.router, tags=["PINs"])
app.include_router(attempts.router, tags=["Attempts"])
app.include_router(admin.router, tags=["Admin"])


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint for container health checks and monitoring."""
    return {"status": "healthy", "service": "exam-gate-backend", "version": "1.0.0"}


@app.get("/", tags=["Root"])
def root():
    """Root endpoint with API information."""
    return {
        "service": "Exam Gate",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "validate_pin": "POST /api/pins/validate",
            "resume": "POST /api/attempts/resume",
            "attempt": "GET /api/attempts/{id}",
            "save_answer": "POST /api/attempts/{id}/answers",
            "submit": "POST /api/attempts/{id}/submit",
            "integrity": "POST /api/attempts/{id}/integrity",
            "admin": "/api/admin/...",
        }
    }
