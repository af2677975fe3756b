"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from rsvp_dispatch.core.config import settings
from rsvp_dispatch.core.logging import setup_logging
from rsvp_dispatch.core.middleware import setup_cors_middleware, access_log_middleware, global_exception_handler
from rsvp_dispatch.core.otel import (
    initialize_otel, setup_otel_logging, instrument_fastapi, instrument_httpx, instrument_sqlalchemy
)
from rsvp_dispatch.db.session import engine, init_db
from rsvp_dispatch.db.redis import get_redis_client

from rsvp_dispatch.api import automations, bulk_jobs, quota, cron

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire telemetry, check storage and optionally start the in-process scheduler"""
    if initialize_otel():
        if setup_otel_logging():
            logger.info(f"Exporting traces, metrics and logs to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OTel traces/metrics exporting, log export could not be attached")
    else:
        logger.info("No OTLP endpoint set, dispatch spans stay local")

    try:
        init_db()
    except Exception as e:
        logger.error(f"Could not prepare job tables: {e}")
        raise

    try:
        get_redis_client().ping()
    except Exception as e:
        logger.error(f"Redis unreachable, job leases and automation locks unavailable: {e}")
        raise
    logger.info(f"Storage ready ({settings.ENVIRONMENT})")

    instrument_sqlalchemy(engine)

    scheduler_tasks = []
    if settings.SCHEDULER_ENABLED:
        from rsvp_dispatch.tasks.scheduler import start_scheduler_tasks
        scheduler_tasks = start_scheduler_tasks()
    else:
        logger.info("In-process scheduler disabled, waiting for /api/cron ticks")

    yield

    for task in scheduler_tasks:
        task.cancel()
    if scheduler_tasks:
        await asyncio.gather(*scheduler_tasks, return_exceptions=True)
    logger.info("Dispatch service stopped")


app = FastAPI(
    title="RSVP Dispatch",
    description="Bulk invitation and reminder delivery for event guests",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
instrument_httpx()

setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(bulk_jobs.router)
app.include_router(bulk_jobs.guests_router)  # Separate router for /api/guests
app.include_router(quota.router)
app.include_router(cron.router)
app.include_router(automations.router)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
