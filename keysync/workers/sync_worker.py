from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from keysync.core.config import JOB_PROVISION, JOB_PURGE, JOB_RECONCILIATION, get_settings
from keysync.core.logging import configure_logging
from keysync.services.operability.runner import run_job

logger = logging.getLogger(__name__)


async def reconcile_snapshot(ctx, manual: bool = False) -> dict[str, Any]:
    # Cron and on-demand entry point for the full-snapshot pass.
    return await run_job(JOB_RECONCILIATION, manual=manual)


async def process_purge_queue(ctx) -> dict[str, Any]:
    return await run_job(JOB_PURGE)


async def process_provision_queue(ctx) -> dict[str, Any]:
    return await run_job(JOB_PROVISION)


def reconcile_minutes(interval_minutes: int) -> set[int]:
    # Spread the pass evenly across the hour; intervals of an hour or more run at minute 0.
    interval = max(1, int(interval_minutes))
    if interval >= 60:
        return {0}
    return set(range(0, 60, interval))


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("sync_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("sync_worker_stopped")


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    # Runs are idempotent and self-recording; arq-level retries would double-count failures.
    max_tries = 1
    functions = [reconcile_snapshot, process_purge_queue, process_provision_queue]
    cron_jobs = [
        cron(
            reconcile_snapshot,
            minute=reconcile_minutes(settings.reconcile_interval_minutes),
            run_at_startup=False,
            unique=True,
        ),
        cron(process_purge_queue, minute=set(range(60)), unique=True),
        cron(process_provision_queue, minute=set(range(60)), unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
