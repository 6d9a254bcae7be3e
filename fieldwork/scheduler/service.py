import asyncio
import logging
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from fieldwork.api.v1.metrics import LEADER_STATUS
from fieldwork.db.session import AsyncSessionLocal
from fieldwork.scheduler.ticker import run_sla_checks, run_payouts_if_due, run_metrics_tasks
from fieldwork.services.notifications import NotificationRetryQueue
from fieldwork.services.payouts import PayoutScheduler
from fieldwork.settings import settings
from fieldwork.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    """
    Periodic driver for the payout window and the SLA monitor.

    Only the instance holding the advisory lock runs them, which is what
    keeps payout runs from overlapping across processes.
    """

    def __init__(
        self,
        queue: NotificationRetryQueue,
        payout_scheduler: PayoutScheduler,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        interval: Optional[int] = None,
    ):
        self.queue = queue
        self.payout_scheduler = payout_scheduler
        self.session_factory = session_factory
        self.interval = interval or settings.SCHEDULER_INTERVAL_SECONDS
        self._running = False
        self._task = None
        self._is_leader = False
        self._last_payout_window: Optional[date] = None

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler service stopped.")

    async def tick(self, session):
        # Session-level lock: re-checked every tick, kept while the session lives.
        is_leader = await try_advisory_lock(session)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Starting scheduler.")
                self._is_leader = True

            await run_sla_checks(session, self.queue)
            self._last_payout_window = await run_payouts_if_due(
                self.payout_scheduler, self._last_payout_window
            )
        elif self._is_leader:
            logger.info("Lost leadership. Stopping scheduler.")
            self._is_leader = False

        LEADER_STATUS.set(1 if self._is_leader else 0)

        # Metrics refresh on every instance so /metrics is current everywhere
        await run_metrics_tasks(session)

    async def _loop(self):
        session = None
        while self._running:
            try:
                if not session:
                    session = self.session_factory()
                await self.tick(session)
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)

                # If DB error, close session and retry to reconnect
                if session:
                    await session.close()
                    session = None

            await asyncio.sleep(self.interval)

        if session:
            await session.close()
