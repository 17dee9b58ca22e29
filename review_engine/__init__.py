from contextlib import asynccontextmanager

from fastapi import FastAPI

from review_engine.config import settings
from review_engine.db import init_all_databases


@asynccontextmanager
async def lifespan(app: FastAPI):
    from review_engine.db.sqlite import connect
    from review_engine.engine import build_engine
    from review_engine.routers.health import SCANNER_TASK
    from review_engine.services.task_registry import (
        run_notification_scans,
        start_task,
        stop_task,
    )

    db_path = await init_all_databases(settings.data_dir)
    db = await connect(db_path)
    engine = build_engine(db)
    app.state.engine = engine
    start_task(
        SCANNER_TASK,
        run_notification_scans(engine.notifications, settings.scan_interval_seconds),
    )
    try:
        yield
    finally:
        await stop_task(SCANNER_TASK)
        await db.close()


def create_app() -> FastAPI:
    application = FastAPI(title="Review Engine", version="0.1.0", lifespan=lifespan)

    from review_engine.routers import health

    application.include_router(health.router)

    return application
