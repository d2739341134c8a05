"""Periodic removal of expired sessions, revoked sessions past grace, and stale OAuth states."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ntpof_auth.services import metrics
from ntpof_auth.services.session_store import SessionStore, SweepResult

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "session_sweep"


async def run_sweep_job(store: SessionStore) -> SweepResult | None:
    """Scheduled job: best effort, a failed pass is logged and retried on the next tick."""
    try:
        result = await store.sweep_expired()
    except Exception as e:
        logger.exception("Sweep: pass failed: %s", e)
        return None
    metrics.SWEEP_REMOVED.labels(kind="expired_session").inc(result.expired_sessions)
    metrics.SWEEP_REMOVED.labels(kind="revoked_session").inc(result.revoked_sessions)
    metrics.SWEEP_REMOVED.labels(kind="oauth_state").inc(result.oauth_states)
    if result.total:
        logger.info(
            "Sweep: removed %s expired sessions, %s revoked sessions, %s oauth states",
            result.expired_sessions,
            result.revoked_sessions,
            result.oauth_states,
        )
    else:
        logger.debug("Sweep: nothing to remove")
    return result


def schedule_sweep(scheduler: AsyncIOScheduler, store: SessionStore, interval_minutes: int) -> None:
    scheduler.add_job(
        run_sweep_job,
        "interval",
        minutes=interval_minutes,
        args=[store],
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
