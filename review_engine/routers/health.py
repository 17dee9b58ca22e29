import aiosqlite
from fastapi import APIRouter, Depends

from review_engine.db.sqlite import get_db
from review_engine.services.task_registry import is_running

router = APIRouter()

SCANNER_TASK = "notification-scanner"


@router.get("/health")
async def health(db: aiosqlite.Connection = Depends(get_db)):
    cursor = await db.execute("SELECT MAX(version) FROM schema_version")
    schema_version = (await cursor.fetchone())[0]
    return {
        "status": "ok",
        "schema_version": schema_version,
        "scanner_running": is_running(SCANNER_TASK),
    }
