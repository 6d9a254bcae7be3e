import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.api.v1.metrics import GEOFENCE_REJECTIONS
from fieldwork.commands.transition import load_job, apply_transition, raise_conflict
from fieldwork.db.models import Job, Property
from fieldwork.domain.errors import GeofenceViolationError, NotAssignedAgentError
from fieldwork.domain.geo import distance_meters
from fieldwork.domain.models import rules_for
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobAction, next_status

logger = logging.getLogger(__name__)


def geofence_radius(job: Job) -> float:
    if job.geofence_radius_m is not None:
        return job.geofence_radius_m
    return rules_for(job.job_type).geofence_radius_m


async def start_job(
    session: AsyncSession,
    job_id: UUID,
    agent_id: str,
    latitude: float,
    longitude: float,
    now: Optional[datetime] = None,
) -> Job:
    """
    Checks the assigned agent in on site.
    The reported position must be inside the job's geofence; otherwise the
    job stays ACCEPTED and GeofenceViolationError is raised.
    """
    now = now or utcnow()
    job = await load_job(session, job_id)

    next_status(job.status, JobAction.START)
    if job.assigned_agent_id != agent_id:
        raise NotAssignedAgentError(job.id, agent_id)

    prop = await session.get(Property, job.property_id)
    distance = distance_meters(latitude, longitude, prop.latitude, prop.longitude)
    radius = geofence_radius(job)

    if distance > radius:
        GEOFENCE_REJECTIONS.inc()
        logger.info(
            "Geofence rejected start for job %s by %s: %.0fm away (radius %.0fm)",
            job.id, agent_id, distance, radius,
        )
        raise GeofenceViolationError(radius, distance)

    updated = await apply_transition(
        session, job, JobAction.START,
        Job.assigned_agent_id == agent_id,
        now=now,
        meta={"agent_id": agent_id, "distance_m": round(distance, 1)},
        started_at=now,
        geofence_distance_m=distance,
    )
    if updated is None:
        await raise_conflict(session, job, JobAction.START)

    return updated
