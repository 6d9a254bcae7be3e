from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.commands.transition import load_job, apply_transition, raise_conflict
from fieldwork.db.models import Job, EvidenceItem
from fieldwork.domain.errors import InsufficientEvidenceError, NotAssignedAgentError
from fieldwork.domain.models import rules_for
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobAction, next_status


async def count_evidence(session: AsyncSession, job_id: UUID) -> int:
    stmt = select(func.count()).select_from(EvidenceItem).where(EvidenceItem.job_id == job_id)
    return (await session.execute(stmt)).scalar() or 0


async def submit_job(
    session: AsyncSession,
    job_id: UUID,
    agent_id: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Hands in the assigned agent's work for review.
    Requires at least the job type's minimum number of evidence captures.
    """
    now = now or utcnow()
    job = await load_job(session, job_id)

    next_status(job.status, JobAction.SUBMIT)
    if job.assigned_agent_id != agent_id:
        raise NotAssignedAgentError(job.id, agent_id)

    required = rules_for(job.job_type).min_evidence
    captured = await count_evidence(session, job.id)
    if captured < required:
        raise InsufficientEvidenceError(required, captured)

    updated = await apply_transition(
        session, job, JobAction.SUBMIT,
        Job.assigned_agent_id == agent_id,
        now=now,
        meta={"agent_id": agent_id, "evidence_count": captured},
        submitted_at=now,
        submission_notes=notes,
    )
    if updated is None:
        await raise_conflict(session, job, JobAction.SUBMIT)

    return updated
