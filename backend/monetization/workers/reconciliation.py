import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta

import dramatiq

from monetization.config import settings
from monetization.database import create_engine, create_session_factory
from monetization.errors import LedgerError
from monetization.services.context import ServiceContext, build_services

logger = logging.getLogger(__name__)

__all__ = [
    "reconcile_withdrawals",
    "verify_held_earnings",
    "retry_failed_withdrawal",
    "start_periodic_jobs",
]


def run_async(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@asynccontextmanager
async def worker_services():
    # each actor call runs on its own event loop, so the engine cannot be shared
    engine = create_engine()
    services = build_services(settings, create_session_factory(engine))
    try:
        yield services
    finally:
        await services.aclose()
        await engine.dispose()


async def reconcile_withdrawals_async(services: ServiceContext) -> dict:
    summary = await services.payouts.reconcile()

    if services.settings.AUTO_RETRY_FAILED_INSTANT:
        for withdrawal_id in await services.payouts.auto_retry_candidates():
            retry_failed_withdrawal.send_with_options(
                args=(str(withdrawal_id),),
                delay=services.settings.AUTO_RETRY_DELAY_SECONDS * 1000,
            )
            summary.setdefault("retries_scheduled", 0)
            summary["retries_scheduled"] += 1

    return summary


async def verify_held_earnings_async(services: ServiceContext) -> int:
    delay = timedelta(hours=services.settings.REFERRAL_VERIFICATION_DELAY_HOURS)
    verified = await services.accrual.release_due_verifications(delay)
    if verified:
        logger.info("[Verify] Released %s held earnings", verified)
    return verified


async def retry_failed_withdrawal_async(services: ServiceContext, withdrawal_id: str):
    try:
        withdrawal = await services.payouts.retry_withdrawal(uuid.UUID(withdrawal_id))
    except LedgerError as e:
        logger.info("[Retry] Skipping withdrawal %s: %s", withdrawal_id, e.message)
        return None
    logger.info("[Retry] Withdrawal %s retried as %s: %s", withdrawal_id, withdrawal.id, withdrawal.status)
    return withdrawal


async def _run(job, *args):
    async with worker_services() as services:
        return await job(services, *args)


@dramatiq.actor(max_retries=0)
def reconcile_withdrawals(reschedule: bool = True):
    try:
        run_async(_run(reconcile_withdrawals_async))
    finally:
        if reschedule:
            reconcile_withdrawals.send_with_options(
                args=(True,),
                delay=settings.RECONCILE_INTERVAL_SECONDS * 1000,
            )


@dramatiq.actor(max_retries=0)
def verify_held_earnings(reschedule: bool = True):
    try:
        run_async(_run(verify_held_earnings_async))
    finally:
        if reschedule:
            verify_held_earnings.send_with_options(
                args=(True,),
                delay=settings.VERIFICATION_INTERVAL_SECONDS * 1000,
            )


@dramatiq.actor(max_retries=3, min_backoff=1000, max_backoff=10000)
def retry_failed_withdrawal(withdrawal_id: str):
    run_async(_run(retry_failed_withdrawal_async, withdrawal_id))


def start_periodic_jobs():
    """Seed the self-rescheduling jobs. Run once per deployment."""
    reconcile_withdrawals.send(True)
    verify_held_earnings.send(True)
    logger.info("Periodic jobs scheduled")
