from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.commands.transition import load_job, apply_transition
from fieldwork.db.models import AgentProfile, Job
from fieldwork.domain.errors import AgentNotEligibleError, AlreadyAssignedError, InvalidStateError
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobAction, JobStatus


async def accept_job(
    session: AsyncSession,
    job_id: UUID,
    agent_id: str,
    now: Optional[datetime] = None,
) -> Job:
    """
    Claims a DISPATCHED job for `agent_id`.

    This is the one write several agents race for. The claim is a single
    UPDATE ... WHERE status = 'dispatched' AND assigned_agent_id IS NULL
    AND version = <read version>; whoever loses the race matches zero rows.
    """
    now = now or utcnow()
    job = await load_job(session, job_id)

    if job.assigned_agent_id is not None:
        raise AlreadyAssignedError(job.id)
    if job.status != JobStatus.DISPATCHED:
        raise InvalidStateError(job.status, JobAction.ACCEPT)

    agent = await session.get(AgentProfile, agent_id)
    if agent is None or not agent.verified:
        raise AgentNotEligibleError(agent_id)

    updated = await apply_transition(
        session, job, JobAction.ACCEPT,
        Job.assigned_agent_id.is_(None),
        now=now,
        meta={"agent_id": agent_id},
        assigned_agent_id=agent_id,
        accepted_at=now,
    )
    if updated is None:
        raise AlreadyAssignedError(job.id)

    return updated
