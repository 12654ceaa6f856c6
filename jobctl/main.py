import importlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobctl.api.v1.dashboard import router as dashboard_router
from jobctl.api.v1.jobs import router as jobs_router
from jobctl.api.v1.metrics import router as metrics_router
from jobctl.db import session as db
from jobctl.domain.errors import StoreUnavailable
from jobctl.domain.models import ConcurrencyBudget
from jobctl.engine.adapter import EngineAdapter, ExecutionEngine
from jobctl.engine.units import default_registry
from jobctl.scheduler.service import SchedulerService
from jobctl.services.notifier import build_notifier
from jobctl.services.outbox import OutboxProcessor
from jobctl.settings import settings

logger = logging.getLogger(__name__)


def load_unit_modules(modules: list[str]) -> None:
    for name in modules:
        importlib.import_module(name)
        logger.info("Loaded unit module %s", name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    load_unit_modules(settings.UNIT_MODULES)
    logger.info("Registered units: %s", ", ".join(app.state.engine.registry.names()) or "(none)")

    if settings.AUTO_CREATE_TABLES:
        await db.init_models(app.state.session_factory.kw["bind"])

    scheduler = SchedulerService(app.state.session_factory, app.state.engine, interval=settings.RECONCILE_INTERVAL_SECONDS)
    await scheduler.start()

    outbox = OutboxProcessor(
        app.state.session_factory,
        build_notifier(settings.NOTIFY_WEBHOOK_URL, timeout=settings.NOTIFY_TIMEOUT_SECONDS),
        interval=settings.OUTBOX_INTERVAL_SECONDS,
    )
    await outbox.start()

    yield

    # Shutdown
    await scheduler.stop()
    await outbox.stop()
    if isinstance(app.state.engine, ExecutionEngine):
        await app.state.engine.shutdown()


async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error("Store unavailable while serving %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "job store unavailable"})


def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    engine: Optional[EngineAdapter] = None,
    run_background: bool = True,
) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan if run_background else None,
    )
    app.state.session_factory = session_factory or db.AsyncSessionLocal
    app.state.engine = engine or ExecutionEngine(
        ConcurrencyBudget(settings.GLOBAL_CONCURRENCY_CAP),
        registry=default_registry,
    )

    app.add_exception_handler(StoreUnavailable, store_unavailable_handler)

    app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
    app.include_router(dashboard_router, prefix="/api/v1/dashboard", tags=["dashboard"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = create_app()


if __name__ == "__main__":
    uvicorn.run("jobctl.main:app", host="0.0.0.0", port=8000)
