"""Process entry point: configure logging and keep one personalization session alive."""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from personalize.catalog.client import CatalogClient
from personalize.config import Settings, settings as default_settings
from personalize.logging_config import setup_logging
from personalize.service import PersonalizationService

startup_log = logging.getLogger("personalize.startup")


async def serve(
    session_id: str,
    *,
    config: Settings | None = None,
    stop: asyncio.Event | None = None,
    service: PersonalizationService | None = None,
) -> PersonalizationService:
    """Open a session and hold it until ``stop`` is set; the session is always closed."""

    cfg = config or default_settings
    log_dir = setup_logging(log_dir=cfg.LOG_DIR, level=cfg.log_level)
    startup_log.info("startup env=%s session=%s log_dir=%s", cfg.ENVIRONMENT, session_id, log_dir)

    if service is None:
        service = PersonalizationService(session_id, catalog_client=CatalogClient(cfg.CATALOG_BASE_URL), config=cfg)
    stop = stop or asyncio.Event()
    try:
        await service.open()
        startup_log.info("session ready products=%s", len(service.catalog))
        await stop.wait()
    finally:
        await service.close()
        startup_log.info("session stopped session=%s", session_id)
    return service


def run() -> None:
    session_id = sys.argv[1] if len(sys.argv) > 1 else os.getenv("PERSONALIZE_SESSION_ID", "default")
    try:
        asyncio.run(serve(session_id))
    except KeyboardInterrupt:
        startup_log.info("interrupted")


if __name__ == "__main__":
    run()


__all__ = ["run", "serve"]
