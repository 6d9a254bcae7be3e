from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.api.v1.metrics import EARNINGS_CREATED
from fieldwork.commands.transition import load_job, apply_transition, raise_conflict
from fieldwork.db.models import Job, PendingEarning
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobAction, EarningStatus


async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    now: Optional[datetime] = None,
) -> Job:
    """
    Marks a SUBMITTED job as COMPLETED once review accepted it.

    The status flip and the PendingEarning insert share the caller's
    transaction: both commit or neither does. The unique constraint on
    earnings.source_job_id rejects a second earning for the same job.
    """
    now = now or utcnow()
    job = await load_job(session, job_id)

    updated = await apply_transition(
        session, job, JobAction.COMPLETE,
        now=now,
        meta={"agent_id": job.assigned_agent_id, "payout_amount": str(job.payout_amount)},
        completed_at=now,
    )
    if updated is None:
        await raise_conflict(session, job, JobAction.COMPLETE)

    session.add(PendingEarning(
        payee_id=updated.assigned_agent_id,
        amount=updated.payout_amount,
        source_job_id=updated.id,
        status=EarningStatus.PENDING,
        created_at=now,
        updated_at=now,
    ))
    await session.flush()

    EARNINGS_CREATED.inc()
    return updated
