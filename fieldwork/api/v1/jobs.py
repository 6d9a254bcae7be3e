from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from fieldwork.api.deps import DbSession, NotificationQueue
from fieldwork.commands.accept_job import accept_job
from fieldwork.commands.cancel_job import cancel_job
from fieldwork.commands.complete_job import complete_job
from fieldwork.commands.create_job import create_job
from fieldwork.commands.dispatch_job import dispatch_job
from fieldwork.commands.start_job import start_job
from fieldwork.commands.submit_job import submit_job
from fieldwork.commands.transition import load_job
from fieldwork.domain.errors import (
    JobError, JobNotFoundError, PropertyNotFoundError, InvalidStateError, AlreadyAssignedError,
    NotAssignedAgentError, AgentNotEligibleError,
)
from fieldwork.domain.sla import ScopePreset, sla_status, time_remaining
from fieldwork.domain.states import JobStatus

router = APIRouter()

class JobCreate(BaseModel):
    property_id: UUID
    scope_preset: ScopePreset
    job_type: str = "onsite_photos"
    special_instructions: Optional[str] = None
    access_contact: Optional[dict[str, Any]] = None
    geofence_radius_m: Optional[float] = Field(default=None, gt=0)

class JobResponse(BaseModel):
    id: UUID
    property_id: UUID
    status: JobStatus
    assigned_agent_id: Optional[str] = None
    version: int
    job_type: str
    scope_preset: str
    payout_amount: Decimal
    sla_due_at: Optional[datetime] = None
    created_at: datetime
    dispatched_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    special_instructions: Optional[str] = None
    cancellation_reason: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class DispatchResponse(JobResponse):
    notified_agents: int = 0

class AcceptRequest(BaseModel):
    agent_id: str

class StartRequest(BaseModel):
    agent_id: str
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)

class SubmitRequest(BaseModel):
    agent_id: str
    notes: Optional[str] = None

class CancelRequest(BaseModel):
    reason: Optional[str] = None

class SLAResponse(BaseModel):
    job_id: UUID
    sla_due_at: Optional[datetime] = None
    status: Optional[str] = None
    remaining_seconds: Optional[float] = None
    label: Optional[str] = None


def to_http_error(e: JobError) -> HTTPException:
    if isinstance(e, (JobNotFoundError, PropertyNotFoundError)):
        code = 404
    elif isinstance(e, (InvalidStateError, AlreadyAssignedError)):
        code = 409
    elif isinstance(e, (NotAssignedAgentError, AgentNotEligibleError)):
        code = 403
    else:
        # Geofence, evidence and duration rule failures
        code = 422
    return HTTPException(status_code=code, detail=str(e))


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def create_job_endpoint(payload: JobCreate, session: DbSession):
    try:
        job = await create_job(
            session,
            property_id=payload.property_id,
            scope_preset=payload.scope_preset,
            job_type=payload.job_type,
            special_instructions=payload.special_instructions,
            access_contact=payload.access_contact,
            geofence_radius_m=payload.geofence_radius_m,
        )
        await session.commit()
        return job
    except JobError as e:
        raise to_http_error(e)

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, session: DbSession):
    try:
        return await load_job(session, job_id)
    except JobError as e:
        raise to_http_error(e)

@router.get("/{job_id}/sla", response_model=SLAResponse)
async def get_job_sla(job_id: UUID, session: DbSession):
    try:
        job = await load_job(session, job_id)
    except JobError as e:
        raise to_http_error(e)

    if job.sla_due_at is None:
        # Not dispatched yet
        return SLAResponse(job_id=job.id)

    remaining = time_remaining(job.sla_due_at)
    return SLAResponse(
        job_id=job.id,
        sla_due_at=job.sla_due_at,
        status=str(sla_status(job.sla_due_at)),
        remaining_seconds=remaining.remaining.total_seconds(),
        label=remaining.label,
    )

@router.post("/{job_id}/dispatch", response_model=DispatchResponse)
async def dispatch_job_endpoint(job_id: UUID, session: DbSession, queue: NotificationQueue):
    try:
        job, notifications = await dispatch_job(session, job_id)
        await session.commit()
    except JobError as e:
        raise to_http_error(e)

    # Only once the dispatch is durable do the agents hear about it
    for payload in notifications:
        queue.enqueue(payload)

    response = DispatchResponse.model_validate(job)
    response.notified_agents = len(notifications)
    return response

@router.post("/{job_id}/accept", response_model=JobResponse)
async def accept_job_endpoint(job_id: UUID, body: AcceptRequest, session: DbSession):
    try:
        job = await accept_job(session, job_id, agent_id=body.agent_id)
        await session.commit()
        return job
    except JobError as e:
        raise to_http_error(e)

@router.post("/{job_id}/start", response_model=JobResponse)
async def start_job_endpoint(job_id: UUID, body: StartRequest, session: DbSession):
    try:
        job = await start_job(
            session, job_id,
            agent_id=body.agent_id,
            latitude=body.latitude,
            longitude=body.longitude,
        )
        await session.commit()
        return job
    except JobError as e:
        raise to_http_error(e)

@router.post("/{job_id}/submit", response_model=JobResponse)
async def submit_job_endpoint(job_id: UUID, body: SubmitRequest, session: DbSession):
    try:
        job = await submit_job(session, job_id, agent_id=body.agent_id, notes=body.notes)
        await session.commit()
        return job
    except JobError as e:
        raise to_http_error(e)

@router.post("/{job_id}/complete", response_model=JobResponse)
async def complete_job_endpoint(job_id: UUID, session: DbSession):
    try:
        job = await complete_job(session, job_id)
        await session.commit()
        return job
    except JobError as e:
        raise to_http_error(e)

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job_endpoint(job_id: UUID, session: DbSession, body: Optional[CancelRequest] = None):
    try:
        job = await cancel_job(session, job_id, reason=body.reason if body else None)
        await session.commit()
        return job
    except JobError as e:
        raise to_http_error(e)
