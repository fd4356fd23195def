"""
Recovery Loop - The Safety Net
==============================
Background task that keeps the staged store honest:
- Evicts staged/awaiting_payment submissions past their TTL
- Evicts delivered submissions past the retention window
- Re-attempts delivery of paid submissions left without a live claim
  (process crashed between take() and the final transition)

Runs once immediately on startup so a restart picks up interrupted
deliveries, then every RECOVERY_INTERVAL seconds.
"""

import asyncio

import structlog

from config import settings
from pipeline.fulfillment_engine import FulfillmentEngine

logger = structlog.get_logger().bind(component="recovery")


class RecoveryConfig:
    """Recovery loop configuration"""

    CHECK_INTERVAL = settings.RECOVERY_INTERVAL
    MAX_SUBMISSIONS_PER_CYCLE = settings.RECOVERY_BATCH_SIZE
    ENABLED = settings.RECOVERY_ENABLED


config = RecoveryConfig()


async def run_recovery_cycle(engine: FulfillmentEngine, batch_size: int = config.MAX_SUBMISSIONS_PER_CYCLE) -> dict:
    """One sweep: eviction, then delivery recovery."""
    evicted = await engine.store.evict_expired()
    recovered = await engine.recover_pending(limit=batch_size)
    failed = await engine.store.list_failed(limit=batch_size)

    if failed:
        logger.error(
            "failed_submissions_awaiting_operator",
            count=len(failed),
            submission_ids=[s.id for s in failed],
        )

    stats = {"evicted": evicted, "recovered": recovered, "failed": len(failed)}
    if evicted or recovered:
        logger.info("recovery_cycle_complete", **stats)
    return stats


async def recovery_loop(engine: FulfillmentEngine, interval: int = config.CHECK_INTERVAL):
    """Sweep forever until cancelled."""
    logger.info("recovery_loop_started", interval=interval, enabled=config.ENABLED)

    while True:
        try:
            await run_recovery_cycle(engine)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("recovery_loop_error", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(interval)
