"""Celery task running the reconciliation sweeper on a beat schedule."""

from __future__ import annotations

import asyncio
import logging

from sharegate.config import Settings, settings
from sharegate.deps import build_services
from sharegate.tasks.celery_app import celery

log = logging.getLogger(__name__)


async def run_sweep(cfg: Settings) -> dict[str, int]:
    services = build_services(cfg)
    try:
        result = await services.sweeper.sweep()
    finally:
        await services.aclose()
    return result.as_dict()


@celery.task(name="sweeper.sweep")
def sweep_task() -> dict[str, int | str]:
    """
    Archive and delete terminal grants.

    Each run builds its own engine and key-value client: a Celery worker
    process has no running event loop to share them with.
    """
    log.info("Starting grant sweep")
    summary = asyncio.run(run_sweep(settings))
    log.info("Grant sweep finished: %s", summary)
    return {"status": "success", **summary}


celery.conf.beat_schedule = {
    "sweep-terminal-grants": {
        "task": "sweeper.sweep",
        "schedule": float(settings.sweep_interval_seconds),
        "args": (),
    },
}
