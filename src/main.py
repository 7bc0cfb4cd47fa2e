"""FastAPI application: reporting/trigger API plus the in-process scheduler."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from src import metrics
from src.api.routes import analysis, reductions
from src.config import settings
from src.db.models import Base
from src.db.session import engine
from src.logging_config import setup_logging
from src.worker.scheduler import setup_scheduler
from src.worker.tasks import task_runner

setup_logging()
logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler

    logger.info("Starting price reduction engine")
    metrics.app_info.info({"version": app.version, "marketplace": settings.marketplace_id})

    # Alembic owns the schema in production; create_all covers fresh local databases
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await task_runner.initialize()

    scheduler = setup_scheduler()
    scheduler.start()
    logger.info("Scheduler started")

    yield

    logger.info("Shutting down")
    if scheduler:
        scheduler.shutdown(wait=False)
    await task_runner.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Price Reduction Engine",
    description="Competitive pricing snapshots and scheduled automatic price reductions",
    version="0.1.0",
    lifespan=lifespan,
)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(reductions.router)
app.include_router(analysis.router)


@app.get("/health")
async def health():
    """Liveness plus the next daily reduction firing, if the scheduler is up."""
    job = scheduler.get_job("daily_price_reduction") if scheduler else None
    next_run = job.next_run_time.isoformat() if job and job.next_run_time else None
    return {
        "status": "healthy",
        "scheduler_running": bool(scheduler and scheduler.running),
        "next_reduction_run": next_run,
    }


if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
