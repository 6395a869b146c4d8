"""
ARQ background task: expire ownership transfers whose 7-day window has passed.

Scheduled to run once a day. Lazy expiration on accept/reject/cancel
covers any gap between runs.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from arq.connections import RedisSettings
from arq.cron import cron

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.services.ownership_transfers import OwnershipTransferManager

log = structlog.get_logger()
settings = get_settings()


async def expire_overdue_transfers(ctx: dict) -> int:
    """Expire overdue pending transfers.

    Returns the number of transfers expired by this run.
    """
    manager: OwnershipTransferManager = ctx.get("transfer_manager") or OwnershipTransferManager()
    now = datetime.now(timezone.utc)
    count = await manager.expire_overdue(now)
    log.info("transfer_expiration.run_complete", count=count, run_at=now.isoformat())
    return count


async def startup(ctx: dict) -> None:
    configure_logging(settings.log_level, settings.log_format)
    ctx["transfer_manager"] = OwnershipTransferManager()
    log.info("transfer_expiration.worker_started", hour=settings.expiration_sweep_hour)


async def shutdown(ctx: dict) -> None:
    manager: OwnershipTransferManager | None = ctx.get("transfer_manager")
    if manager is not None:
        await manager.drain_notifications()


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [expire_overdue_transfers]
    cron_jobs = [
        # Once a day
        cron(
            expire_overdue_transfers,
            hour={settings.expiration_sweep_hour},
            minute={0},
            run_at_startup=False,
        ),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
