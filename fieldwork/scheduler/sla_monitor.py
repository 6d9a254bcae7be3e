import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.api.v1.metrics import SLA_BREACHES
from fieldwork.commands.transition import job_snapshot
from fieldwork.db.models import AgentProfile, Job, JobEventLog
from fieldwork.domain.models import NotificationPayload
from fieldwork.domain.sla import (
    ESCALATION_ORDER, EscalationLevel, SLAStatus, as_utc, escalation_level, sla_status, utcnow,
)
from fieldwork.domain.states import JobEvent, JobStatus, NotificationType

logger = logging.getLogger(__name__)

ACTIVE_STATES = [
    JobStatus.DISPATCHED,
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
    JobStatus.SUBMITTED,
]


async def _previous_alerts(session: AsyncSession, job_ids) -> tuple[set, dict]:
    stmt = (
        select(JobEventLog)
        .where(
            JobEventLog.job_id.in_(job_ids),
            JobEventLog.event_type.in_([JobEvent.SLA_REMINDER, JobEvent.SLA_ESCALATED]),
        )
        .order_by(JobEventLog.id.asc())
    )
    reminded = set()
    levels = {}
    for event in (await session.execute(stmt)).scalars():
        if event.event_type == JobEvent.SLA_REMINDER:
            reminded.add(event.job_id)
        else:
            levels[event.job_id] = EscalationLevel(event.meta["level"])
    return reminded, levels


def _level_for(job: Job, now: datetime) -> EscalationLevel:
    window_start = as_utc(job.created_at)
    sla_hours = (as_utc(job.sla_due_at) - window_start).total_seconds() / 3600
    elapsed_hours = (now - window_start).total_seconds() / 3600
    return escalation_level(elapsed_hours, sla_hours)


async def check_slas(
    session: AsyncSession,
    now: Optional[datetime] = None,
) -> tuple[int, list[NotificationPayload]]:
    """
    Scans active jobs against their SLA deadline.

    Assigned jobs that are AT_RISK get a single JOB_REMINDER. BREACHED jobs
    get a JOB_ESCALATION to their agent whenever the escalation level rises.
    Every alert is written to the job's audit trail, which is also what keeps
    the same alert from firing twice. Returns the number of breached jobs and
    the payloads to enqueue once the caller has committed.
    """
    now = as_utc(now) if now else utcnow()

    stmt = select(Job).where(Job.status.in_(ACTIVE_STATES), Job.sla_due_at.is_not(None))
    jobs = (await session.execute(stmt)).scalars().all()
    if not jobs:
        SLA_BREACHES.set(0)
        return 0, []

    reminded, levels = await _previous_alerts(session, [job.id for job in jobs])

    agent_ids = {job.assigned_agent_id for job in jobs if job.assigned_agent_id}
    agents = {}
    if agent_ids:
        rows = await session.execute(select(AgentProfile).where(AgentProfile.user_id.in_(agent_ids)))
        agents = {agent.user_id: agent for agent in rows.scalars()}

    breached = 0
    payloads: list[NotificationPayload] = []

    for job in jobs:
        status = sla_status(job.sla_due_at, now)
        if status == SLAStatus.ON_TRACK:
            continue

        if status == SLAStatus.BREACHED:
            breached += 1

        agent = agents.get(job.assigned_agent_id)
        if agent is None:
            if status == SLAStatus.BREACHED:
                logger.warning("Job %s breached its SLA while still unassigned (%s)", job.id, job.status)
            continue

        if status == SLAStatus.BREACHED:
            level = _level_for(job, now)
            previous = levels.get(job.id)
            if previous is not None and ESCALATION_ORDER.index(level) <= ESCALATION_ORDER.index(previous):
                continue
            event_type, notification_type = JobEvent.SLA_ESCALATED, NotificationType.JOB_ESCALATION
            meta = {"level": str(level), "agent_id": agent.user_id}
            logger.warning("Job %s SLA breached, escalating to %s", job.id, level)
        else:
            if job.id in reminded:
                continue
            event_type, notification_type = JobEvent.SLA_REMINDER, NotificationType.JOB_REMINDER
            meta = {"agent_id": agent.user_id}

        session.add(JobEventLog(job_id=job.id, event_type=event_type, timestamp=now, meta=meta))
        payloads.append(NotificationPayload(
            user_id=agent.user_id,
            user_email=agent.email,
            user_name=agent.name,
            job=job_snapshot(job, job.property),
            type=notification_type,
        ))

    await session.flush()
    SLA_BREACHES.set(breached)
    return breached, payloads
