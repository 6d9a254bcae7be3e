import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Protocol
from uuid import uuid4

import httpx
from croniter import croniter
from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldwork.api.v1.metrics import PAYOUT_RESULTS, PAYOUT_AMOUNT
from fieldwork.db.models import AgentProfile, PendingEarning, Payout
from fieldwork.domain.errors import NoPayoutMethodError, PayoutError, TransferError
from fieldwork.domain.models import PayeeBatch, PayoutResult, SchedulerResult
from fieldwork.domain.sla import as_utc, utcnow
from fieldwork.domain.states import EarningStatus, PayoutStatus
from fieldwork.settings import settings

logger = logging.getLogger(__name__)

PROCESSED = "PROCESSED"
SKIPPED = "SKIPPED"
FAILED = "FAILED"


class EarningsChangedError(PayoutError):
    """Some earnings in the batch left PENDING while the run was working on them."""
    pass


class PayoutDestination(Protocol):
    async def has_payout_method(self, payee_id: str) -> bool: ...

    async def transfer(self, payee_id: str, amount: Decimal, description: str) -> Optional[str]: ...


class AccountPayoutDestination:
    """
    Payout destinations backed by the agent's connected payout account.

    With PAYOUT_PROVIDER_URL configured, transfers are posted to the provider
    and its transfer id is returned. Without it the payout record is the
    instruction and settlement happens on the payment rail's side.
    """

    def __init__(self, session_factory: async_sessionmaker, base_url: Optional[str] = None,
                 api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.session_factory = session_factory
        self.api_key = api_key
        self.client = client
        if base_url and client is None:
            self.client = httpx.AsyncClient(
                base_url=base_url.rstrip("/"),
                timeout=settings.PAYOUT_TRANSFER_TIMEOUT_SECONDS,
            )

    async def _account_id(self, payee_id: str) -> Optional[str]:
        async with self.session_factory() as session:
            stmt = select(AgentProfile.payout_account_id).where(AgentProfile.user_id == payee_id)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def has_payout_method(self, payee_id: str) -> bool:
        return bool(await self._account_id(payee_id))

    async def transfer(self, payee_id: str, amount: Decimal, description: str) -> Optional[str]:
        if self.client is None:
            logger.info("Payout instruction recorded for %s: %s (%s)", payee_id, amount, description)
            return None

        account_id = await self._account_id(payee_id)
        if not account_id:
            raise NoPayoutMethodError(payee_id)

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = await self.client.post(
                "/transfers",
                json={"destination": account_id, "amount": str(amount), "description": description},
                headers=headers,
            )
            resp.raise_for_status()
            return resp.json().get("id")
        except (httpx.HTTPError, ValueError) as e:
            raise TransferError(f"Transfer to {payee_id} failed: {e}") from e

    async def close(self):
        if self.client is not None:
            await self.client.aclose()


def _money(amount: Decimal) -> str:
    amount = Decimal(amount)
    return str(amount.quantize(Decimal(1))) if amount == amount.to_integral_value() else f"{amount:.2f}"


class PayoutScheduler:
    """
    Weekly batch that turns PENDING earnings into payout instructions.

    Each payee is handled in its own transaction, so one payee's failure never
    blocks another. Re-running is safe: only earnings still PENDING are
    selected and the PENDING -> PROCESSING flip is itself status-gated.
    Overlapping runs are kept apart by the scheduler's leader lock, not here.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        destination: PayoutDestination,
        minimum_amount: Optional[float] = None,
        maximum_amount: Optional[float] = None,
        weekday: Optional[int] = None,
        hour: Optional[int] = None,
        transfer_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.destination = destination
        self.minimum_amount = Decimal(str(settings.PAYOUT_MINIMUM_AMOUNT if minimum_amount is None else minimum_amount))
        self.maximum_amount = Decimal(str(settings.PAYOUT_MAXIMUM_AMOUNT if maximum_amount is None else maximum_amount))
        self.weekday = settings.PAYOUT_WEEKDAY if weekday is None else weekday
        self.hour = settings.PAYOUT_HOUR if hour is None else hour
        self.transfer_timeout = transfer_timeout or settings.PAYOUT_TRANSFER_TIMEOUT_SECONDS

    async def pending_batches(self) -> list[PayeeBatch]:
        async with self.session_factory() as session:
            stmt = (
                select(PendingEarning)
                .where(PendingEarning.status == EarningStatus.PENDING)
                .order_by(PendingEarning.created_at.asc())
            )
            earnings = (await session.execute(stmt)).scalars().all()

        batches: dict[str, PayeeBatch] = {}
        for earning in earnings:
            batch = batches.setdefault(earning.payee_id, PayeeBatch(earning.payee_id, Decimal("0")))
            batch.amount += Decimal(earning.amount)
            batch.earning_ids.append(earning.id)
        return list(batches.values())

    async def run(self, now: Optional[datetime] = None) -> SchedulerResult:
        now = now or utcnow()
        results: list[PayoutResult] = []
        errors: list[str] = []
        processed_count = 0
        total_amount = Decimal("0")

        logger.info("[PayoutScheduler] Starting scheduled payout run...")

        try:
            batches = await self.pending_batches()
        except SQLAlchemyError as e:
            logger.error("[PayoutScheduler] Could not load pending earnings: %s", e, exc_info=True)
            return SchedulerResult(False, 0, total_amount, results, [str(e)])

        logger.info("[PayoutScheduler] Found %d payees with pending earnings", len(batches))

        for batch in batches:
            status, reason = await self._process_batch(batch, now, errors)
            if status == PROCESSED:
                processed_count += 1
                total_amount += batch.amount

            PAYOUT_RESULTS.labels(status=status.lower()).inc()
            results.append(PayoutResult(
                payee_id=batch.payee_id,
                amount=batch.amount,
                earnings_count=batch.earnings_count,
                status=status,
                reason=reason,
            ))

        logger.info(
            "[PayoutScheduler] Completed: %d payouts, $%s total",
            processed_count, f"{total_amount:.2f}",
        )
        return SchedulerResult(True, processed_count, total_amount, results, errors)

    async def _process_batch(self, batch: PayeeBatch, now: datetime, errors: list[str]) -> tuple[str, Optional[str]]:
        if batch.amount < self.minimum_amount:
            return SKIPPED, f"Below minimum (${_money(self.minimum_amount)})"

        if batch.amount > self.maximum_amount:
            errors.append(f"Payee {batch.payee_id}: Payout of ${_money(batch.amount)} exceeds limit")
            return SKIPPED, f"Exceeds maximum (${_money(self.maximum_amount)}) - requires manual review"

        try:
            await self._disburse(batch, now)
        except EarningsChangedError as e:
            logger.warning("[PayoutScheduler] Payee %s skipped: %s", batch.payee_id, e)
            return SKIPPED, str(e)
        except (PayoutError, SQLAlchemyError) as e:
            logger.error("[PayoutScheduler] Payout for %s failed: %s", batch.payee_id, e)
            errors.append(f"Payee {batch.payee_id}: {e}")
            return FAILED, str(e)

        return PROCESSED, None

    async def _disburse(self, batch: PayeeBatch, now: datetime):
        try:
            has_method = await asyncio.wait_for(
                self.destination.has_payout_method(batch.payee_id),
                timeout=self.transfer_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransferError(f"Payout method lookup timed out after {self.transfer_timeout}s") from e
        except PayoutError:
            raise
        except Exception as e:
            raise TransferError(f"Payout method lookup failed: {type(e).__name__}: {e}") from e

        if not has_method:
            raise NoPayoutMethodError(batch.payee_id)

        description = f"Scheduled payout - {batch.earnings_count} jobs"
        payout_id = uuid4()

        # 1. Claim the earnings and record the payout in one transaction
        async with self.session_factory() as session:
            async with session.begin():
                session.add(Payout(
                    id=payout_id,
                    payee_id=batch.payee_id,
                    amount=batch.amount,
                    earnings_count=batch.earnings_count,
                    status=PayoutStatus.PROCESSING,
                    description=description,
                    created_at=now,
                ))
                await session.flush()

                stmt = (
                    update(PendingEarning)
                    .where(
                        PendingEarning.id.in_(batch.earning_ids),
                        PendingEarning.status == EarningStatus.PENDING,  # Safety check
                    )
                    .values(status=EarningStatus.PROCESSING, payout_id=payout_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount != batch.earnings_count:
                    raise EarningsChangedError(
                        f"{batch.earnings_count - result.rowcount} earnings changed status during the run"
                    )

        PAYOUT_AMOUNT.inc(float(batch.amount))

        # 2. Move the money, bounded by a timeout
        try:
            reference = await asyncio.wait_for(
                self.destination.transfer(batch.payee_id, batch.amount, description),
                timeout=self.transfer_timeout,
            )
        except asyncio.TimeoutError as e:
            await self._mark_failed(payout_id, now)
            raise TransferError(f"Transfer timed out after {self.transfer_timeout}s") from e
        except PayoutError:
            await self._mark_failed(payout_id, now)
            raise
        except Exception as e:
            # Provider faults stay with this payee; the run moves on to the next one.
            await self._mark_failed(payout_id, now)
            raise TransferError(f"Transfer failed: {type(e).__name__}: {e}") from e

        if reference:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(Payout).where(Payout.id == payout_id).values(transfer_reference=reference)
                    )

    async def _mark_failed(self, payout_id, now: datetime):
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Payout).where(Payout.id == payout_id).values(status=PayoutStatus.FAILED, processed_at=now)
                )
                await session.execute(
                    update(PendingEarning)
                    .where(
                        PendingEarning.payout_id == payout_id,
                        PendingEarning.status == EarningStatus.PROCESSING,
                    )
                    .values(status=EarningStatus.FAILED, updated_at=now)
                )

    def is_scheduled_run_day(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now.weekday() == self.weekday and now.hour >= self.hour

    def next_scheduled_run_date(self, now: Optional[datetime] = None) -> datetime:
        """
        Next weekly payout slot strictly after `now`.
        On payout day before PAYOUT_HOUR this is later the same day, not next week.
        """
        now = now or utcnow()
        cron_weekday = (self.weekday + 1) % 7  # cron counts from Sunday
        return croniter(f"0 {self.hour} * * {cron_weekday}", now).get_next(datetime)

    async def stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        async with self.session_factory() as session:
            pending = await self._aggregate(session, PendingEarning, PendingEarning.status == EarningStatus.PENDING)
            processing = await self._aggregate(session, PendingEarning, PendingEarning.status == EarningStatus.PROCESSING)
            completed = await self._aggregate(
                session, Payout,
                Payout.status == PayoutStatus.COMPLETED,
                Payout.processed_at >= month_start,
            )

        return {
            "pending_payouts": pending[0],
            "pending_amount": pending[1],
            "processing_payouts": processing[0],
            "processing_amount": processing[1],
            "completed_this_month": completed[0],
            "completed_amount_this_month": completed[1],
            "next_scheduled_payout": self.next_scheduled_run_date(as_utc(now)),
        }

    @staticmethod
    async def _aggregate(session: AsyncSession, model, *conditions) -> tuple[int, Decimal]:
        stmt = select(func.count(), func.sum(model.amount)).select_from(model).where(*conditions)
        count, total = (await session.execute(stmt)).one()
        return count or 0, Decimal(str(total or 0))
