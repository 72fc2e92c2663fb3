from __future__ import annotations

import asyncio
import logging

import pytest

from personalize.config import Settings
from personalize.enrichment import EnrichmentClient
from personalize.runner import serve
from personalize.scheduler import ManualScheduler
from personalize.service import PersonalizationService
from personalize.storage import MemoryKeyValueStore


@pytest.mark.asyncio
async def test_serve_configures_logging_and_closes_session(tmp_path):
    config = Settings(ENVIRONMENT="test", EXPERIMENTS_FILE=None, LOG_DIR=str(tmp_path / "logs"), LOG_LEVEL="INFO")
    scheduler = ManualScheduler()
    service = PersonalizationService(
        "session-run",
        storage=MemoryKeyValueStore(),
        scheduler=scheduler,
        enrichment=EnrichmentClient("http://enrichment.invalid", enabled=False),
        config=config,
    )
    stop = asyncio.Event()
    stop.set()

    returned = await serve("session-run", config=config, stop=stop, service=service)

    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.flush()
        root.removeHandler(handler)
        handler.close()

    assert returned is service
    assert scheduler.active == 0
    text = (tmp_path / "logs" / "personalize.log").read_text(encoding="utf-8")
    assert "logging initialized" in text
    assert "session ready" in text
    assert "session stopped session=session-run" in text
