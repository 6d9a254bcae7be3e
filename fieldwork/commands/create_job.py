from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.db.models import Job, JobEventLog, Property
from fieldwork.domain.errors import PropertyNotFoundError
from fieldwork.domain.sla import ScopePreset, scope_config, utcnow
from fieldwork.domain.states import JobStatus, JobEvent


async def create_job(
    session: AsyncSession,
    property_id: UUID,
    scope_preset: ScopePreset,
    job_type: str = "onsite_photos",
    special_instructions: Optional[str] = None,
    access_contact: Optional[dict[str, Any]] = None,
    geofence_radius_m: Optional[float] = None,
) -> Job:
    """
    Creates a verification job in PENDING_DISPATCH priced from its scope preset.
    The SLA deadline is left unset until dispatch.
    """
    prop = await session.get(Property, property_id)
    if not prop:
        raise PropertyNotFoundError(property_id)

    config = scope_config(scope_preset)
    now = utcnow()

    job = Job(
        property_id=prop.id,
        status=JobStatus.PENDING_DISPATCH,
        job_type=job_type,
        scope_preset=str(ScopePreset(scope_preset)),
        payout_amount=config.payout_amount,
        geofence_radius_m=geofence_radius_m,
        special_instructions=special_instructions,
        access_contact=access_contact,
        created_at=now,
        updated_at=now,
        version=1,
    )
    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        timestamp=now,
        meta={"scope_preset": job.scope_preset, "payout_amount": str(job.payout_amount)},
    ))
    await session.flush()
    return job
