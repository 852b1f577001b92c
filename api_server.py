#!/usr/bin/env python
"""
FastAPI server for CrediBill
Hosts the tenant billing API, payment provider webhooks and health/metrics endpoints
"""
import sys
import os
from contextlib import asynccontextmanager

# Load environment variables from .env file if it exists
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    # python-dotenv not installed, skip loading .env file
    pass

# Add src to Python path (relative to api_server.py)
src_path = os.path.join(os.path.dirname(__file__), "src")
if os.path.exists(src_path) and src_path not in sys.path:
    sys.path.insert(0, src_path)

# Add /app/src if we're in Docker (should already be in PYTHONPATH, but ensure it)
docker_src_path = "/app/src"
if os.path.exists(docker_src_path) and docker_src_path not in sys.path:
    sys.path.insert(0, docker_src_path)

import logging

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from credibill import __version__
from credibill.config import config
from credibill.db import get_db
from credibill.logging_config import setup_logging, RequestIDMiddleware
from credibill.exceptions import (
    BillingError,
    billing_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    general_exception_handler,
)
from credibill.billing_routes import router as billing_router
from credibill.webhook_routes import router as webhook_router
from credibill.services.metrics import get_metrics_collector
from credibill.services.scheduled_jobs import get_scheduler, start_scheduler, stop_scheduler

setup_logging(config.ENV, config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.SCHEDULER_ENABLED:
        try:
            start_scheduler()
        except Exception as e:
            # The API still serves requests; sweeps can run from another instance
            logger.error(f"Failed to start background scheduler: {e}", exc_info=True)
    else:
        logger.info("Background scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    if config.SCHEDULER_ENABLED:
        stop_scheduler()


app = FastAPI(title="CrediBill API", version=__version__, lifespan=lifespan)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BillingError, billing_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, general_exception_handler)

app.include_router(billing_router)
app.include_router(webhook_router)


@app.get("/")
async def root():
    return {"message": "CrediBill API", "status": "running", "version": __version__}


@app.get("/health")
async def health():
    """Health check endpoint for load balancers and monitoring"""
    return {"status": "healthy", "service": "credibill"}


@app.get("/health/ready")
def readiness(db: Session = Depends(get_db)):
    """
    Readiness check: database reachable and scheduler state

    Returns 503 when the database cannot be queried.
    """
    checks = {}
    try:
        db.execute(text("SELECT 1")).scalar()
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Database readiness check failed: {e}")
        checks["database"] = "down"

    if not config.SCHEDULER_ENABLED:
        checks["scheduler"] = "disabled"
    else:
        checks["scheduler"] = "running" if get_scheduler().running else "stopped"

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ready" if healthy else "unavailable", "checks": checks},
    )


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Counters and job durations in Prometheus text format"""
    return get_metrics_collector().format_prometheus()


if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 50)
    logger.info("CrediBill API - Starting Up")
    logger.info("=" * 50)
    logger.info(f"Python version: {sys.version}")
    logger.info(f"Working directory: {os.getcwd()}")
    logger.info(f"ENV: {config.ENV}")
    logger.info(f"DATABASE_URL: {'SET' if os.getenv('DATABASE_URL') else 'NOT SET'}")
    logger.info(f"Scheduler: {'enabled' if config.SCHEDULER_ENABLED else 'disabled'}")

    port = config.PORT
    logger.info(f"Starting CrediBill API server on port {port}")
    logger.info(f"Health check endpoint: http://0.0.0.0:{port}/health")
    logger.info("=" * 50)

    try:
        uvicorn.run(
            app,
            host="0.0.0.0",
            port=port,
            log_config=None,
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)
