from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.commands.transition import load_job, apply_transition, raise_conflict
from fieldwork.db.models import Job
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobAction


async def cancel_job(
    session: AsyncSession,
    job_id: UUID,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Cancels a job from any non-terminal state.
    Any agent assignment is cleared so abandoned work does not count against
    the agent; no earning is created.
    """
    now = now or utcnow()
    job = await load_job(session, job_id)
    previous_agent = job.assigned_agent_id

    updated = await apply_transition(
        session, job, JobAction.CANCEL,
        now=now,
        meta={"reason": reason, "previous_agent_id": previous_agent},
        assigned_agent_id=None,
        cancelled_at=now,
        cancellation_reason=reason,
    )
    if updated is None:
        await raise_conflict(session, job, JobAction.CANCEL)

    return updated
