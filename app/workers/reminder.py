"""Celery task running one sweep over due reminders."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from app.celery_app import celery_app
from app.runtime import open_services
from app.services.sweep import SweepReport

_LOGGER = logging.getLogger(__name__)


async def sweep_once() -> SweepReport:
    # Each task invocation gets its own event loop, so the store's engine
    # must not outlive it.
    services = await open_services()
    try:
        return await services.sweeper.run_once()
    finally:
        await services.close()


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.dispatch_due", bind=True, ignore_result=True)
def dispatch_due(self):  # noqa: D401
    """Dispatch every due reminder; failed sends wait for the next tick."""
    report = asyncio.run(sweep_once())
    _LOGGER.info("dispatch_due finished: %s", asdict(report))
    return asdict(report)
