import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.api.v1.metrics import JOBS_BY_STATUS
from fieldwork.db.models import Job
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobStatus
from fieldwork.scheduler.sla_monitor import check_slas
from fieldwork.services.notifications import NotificationRetryQueue
from fieldwork.services.payouts import PayoutScheduler

logger = logging.getLogger(__name__)


async def run_sla_checks(session: AsyncSession, queue: NotificationRetryQueue, now: Optional[datetime] = None) -> int:
    """Runs the SLA monitor, commits its audit rows, then enqueues the alerts."""
    breached, payloads = await check_slas(session, now)
    await session.commit()

    for payload in payloads:
        queue.enqueue(payload)
    return breached


async def run_payouts_if_due(
    payout_scheduler: PayoutScheduler,
    last_window: Optional[date],
    now: Optional[datetime] = None,
) -> Optional[date]:
    """
    Triggers the payout run once per scheduled day.
    Returns the window that has now been run (or the previous one, unchanged).
    """
    now = now or utcnow()
    if not payout_scheduler.is_scheduled_run_day(now) or last_window == now.date():
        return last_window

    result = await payout_scheduler.run(now)
    if result.errors:
        logger.warning("Payout run finished with %d errors: %s", len(result.errors), result.errors)
    return now.date()


async def run_metrics_tasks(session: AsyncSession):
    # Gauges are refreshed from the table rather than tracked per transition.
    q_status = select(Job.status, func.count(Job.id)).group_by(Job.status)
    counts = {status: count for status, count in (await session.execute(q_status)).all()}

    for status in JobStatus:
        JOBS_BY_STATUS.labels(status=str(status)).set(counts.get(str(status), 0))
