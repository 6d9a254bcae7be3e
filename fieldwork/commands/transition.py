from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.api.v1.metrics import JOB_TRANSITIONS
from fieldwork.db.models import Job, JobEventLog, Property
from fieldwork.domain.errors import JobNotFoundError, InvalidStateError
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobAction, JobEvent, next_status

EVENT_FOR_ACTION = {
    JobAction.DISPATCH: JobEvent.DISPATCHED,
    JobAction.ACCEPT: JobEvent.ACCEPTED,
    JobAction.START: JobEvent.STARTED,
    JobAction.SUBMIT: JobEvent.SUBMITTED,
    JobAction.COMPLETE: JobEvent.COMPLETED,
    JobAction.CANCEL: JobEvent.CANCELLED,
}


async def load_job(session: AsyncSession, job_id: UUID) -> Job:
    stmt = select(Job).where(Job.id == job_id)
    job = (await session.execute(stmt)).scalar_one_or_none()
    if not job:
        raise JobNotFoundError(job_id)
    return job


async def apply_transition(
    session: AsyncSession,
    job: Job,
    action: JobAction,
    *conditions,
    now: Optional[datetime] = None,
    meta: Optional[dict[str, Any]] = None,
    **values,
) -> Optional[Job]:
    """
    Moves `job` along the transition table with a guarded UPDATE.

    The write only lands if the row still carries the status and version we
    read (plus any extra `conditions`), and it bumps the version. Returns the
    refreshed job, or None when another writer got there first.

    Raises InvalidStateError if the action is not allowed from the current status.
    """
    target = next_status(job.status, action)
    now = now or utcnow()
    read_status, read_version = job.status, job.version

    stmt = (
        update(Job)
        .where(
            Job.id == job.id,
            Job.status == read_status,
            Job.version == read_version,
            *conditions,
        )
        .values(status=target, version=read_version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        return None

    await session.refresh(job)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=EVENT_FOR_ACTION[action],
        timestamp=now,
        meta={"from": str(read_status), "to": str(target), **(meta or {})},
    ))
    JOB_TRANSITIONS.labels(action=str(action)).inc()

    await session.flush()
    return job


async def raise_conflict(session: AsyncSession, job: Job, action: JobAction):
    """Reloads a job whose guarded write missed and reports the state it is in now."""
    await session.refresh(job)
    raise InvalidStateError(job.status, action)


def job_snapshot(job: Job, prop: Property) -> dict[str, Any]:
    """Denormalized view of a job carried inside notification payloads."""
    return {
        "id": str(job.id),
        "status": str(job.status),
        "scope_preset": job.scope_preset,
        "payout_amount": str(job.payout_amount),
        "sla_due_at": job.sla_due_at.isoformat() if job.sla_due_at else None,
        "property": {
            "address_line1": prop.address_line1,
            "address_full": prop.address_full,
            "city": prop.city,
            "state": prop.state,
            "zip_code": prop.zip_code,
            "latitude": prop.latitude,
            "longitude": prop.longitude,
        },
    }
