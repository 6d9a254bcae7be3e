import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.commands.transition import load_job, apply_transition, raise_conflict, job_snapshot
from fieldwork.db.models import AgentProfile, Job, Property
from fieldwork.domain.geo import Coordinates, bounding_box, distance_miles
from fieldwork.domain.models import NotificationPayload
from fieldwork.domain.sla import as_utc, due_at, utcnow
from fieldwork.domain.states import JobAction, NotificationType

logger = logging.getLogger(__name__)


async def find_agents_in_range(session: AsyncSession, prop: Property) -> list[tuple[AgentProfile, float]]:
    """
    Verified agents whose coverage radius around their home base contains the property,
    nearest first, with their distance in miles.
    """
    max_radius = (await session.execute(
        select(func.max(AgentProfile.coverage_radius_miles)).where(AgentProfile.verified.is_(True))
    )).scalar()
    if not max_radius:
        return []

    # Coarse box with the widest radius anyone covers, exact distance below
    box = bounding_box(Coordinates(prop.latitude, prop.longitude), max_radius)
    stmt = select(AgentProfile).where(
        AgentProfile.verified.is_(True),
        AgentProfile.home_base_lat.between(box.min_lat, box.max_lat),
        AgentProfile.home_base_lng.between(box.min_lng, box.max_lng),
    )
    candidates = (await session.execute(stmt)).scalars().all()

    matched = []
    for agent in candidates:
        distance = distance_miles(agent.home_base_lat, agent.home_base_lng, prop.latitude, prop.longitude)
        if distance <= agent.coverage_radius_miles:
            matched.append((agent, distance))

    matched.sort(key=lambda pair: pair[1])
    return matched


async def dispatch_job(
    session: AsyncSession,
    job_id: UUID,
    now: Optional[datetime] = None,
) -> tuple[Job, list[NotificationPayload]]:
    """
    Offers a PENDING_DISPATCH job to the agent pool.

    Fixes the SLA deadline (created_at + scope SLA hours) and returns one
    JOB_AVAILABLE payload per agent in range. Payloads are handed back rather
    than enqueued so the caller can enqueue them after the commit.
    """
    now = now or utcnow()
    job = await load_job(session, job_id)
    prop = await session.get(Property, job.property_id)

    # The deadline is set exactly once; a job already carrying one keeps it.
    sla_due_at = job.sla_due_at or due_at(job.scope_preset, as_utc(job.created_at))

    updated = await apply_transition(
        session, job, JobAction.DISPATCH,
        now=now,
        sla_due_at=sla_due_at,
        dispatched_at=now,
    )
    if updated is None:
        await raise_conflict(session, job, JobAction.DISPATCH)

    matched = await find_agents_in_range(session, prop)
    snapshot = job_snapshot(job, prop)
    notifications = [
        NotificationPayload(
            user_id=agent.user_id,
            user_email=agent.email,
            user_name=agent.name,
            job=snapshot,
            type=NotificationType.JOB_AVAILABLE,
        )
        for agent, _ in matched
    ]

    if not notifications:
        logger.warning("Job %s dispatched but no agents cover property %s", job.id, prop.id)
    else:
        logger.info("Job %s dispatched to %d agents", job.id, len(notifications))

    return job, notifications
