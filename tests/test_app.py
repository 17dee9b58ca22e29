import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from review_engine import create_app
from review_engine.config import settings
from review_engine.engine import ReviewEngine
from review_engine.models.notification import BatchResult, ScanResult
from review_engine.services.task_registry import (
    get_task,
    is_running,
    run_notification_scans,
    start_task,
    stop_task,
)


def test_health_reports_database_and_scanner(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "data_dir", tmp_path / "data")
    monkeypatch.setattr(settings, "scan_interval_seconds", 3600.0)

    with TestClient(create_app()) as client:
        res = client.get("/health")
        assert isinstance(client.app.state.engine, ReviewEngine)

    assert res.status_code == 200
    assert res.json() == {"status": "ok", "schema_version": 1, "scanner_running": True}
    assert (tmp_path / "data" / settings.sqlite_filename).exists()
    assert not is_running("notification-scanner")


@pytest.mark.asyncio
async def test_scanner_survives_failing_ticks():
    calls = 0

    async def scan():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("database is locked")
        return ScanResult(batch=BatchResult())

    manager = AsyncMock()
    manager.scan.side_effect = scan
    task = start_task("scanner-under-test", run_notification_scans(manager, 0.001))
    assert get_task("scanner-under-test") is task

    async def wait_for_ticks():
        while manager.scan.await_count < 3:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(wait_for_ticks(), timeout=5)
    await stop_task("scanner-under-test")

    assert task.cancelled()
    assert not is_running("scanner-under-test")
    assert get_task("scanner-under-test") is None
