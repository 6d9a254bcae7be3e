from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from fieldwork.commands.accept_job import accept_job
from fieldwork.commands.cancel_job import cancel_job
from fieldwork.commands.complete_job import complete_job
from fieldwork.commands.create_job import create_job
from fieldwork.commands.dispatch_job import dispatch_job
from fieldwork.commands.start_job import geofence_radius, start_job
from fieldwork.commands.submit_job import submit_job
from fieldwork.commands.transition import load_job
from fieldwork.db.models import Job, JobEventLog, PendingEarning
from fieldwork.domain.errors import (
    AgentNotEligibleError, AlreadyAssignedError, GeofenceViolationError, InsufficientEvidenceError,
    InvalidStateError, JobNotFoundError, NotAssignedAgentError, PropertyNotFoundError,
)
from fieldwork.domain.models import rules_for
from fieldwork.domain.sla import ScopePreset, as_utc
from fieldwork.domain.states import EarningStatus, JobStatus, NotificationType
from fieldwork.settings import settings

from tests.conftest import AUSTIN, NEAR_AUSTIN, SAN_ANTONIO


@pytest.fixture
async def job(session, property_row):
    job = await create_job(session, property_row.id, ScopePreset.EXTERIOR_ONLY)
    await session.commit()
    return job


@pytest.fixture
async def alice(make_agent):
    return await make_agent("alice")


@pytest.fixture
async def accepted_job(session, job, alice):
    await dispatch_job(session, job.id)
    await accept_job(session, job.id, "alice")
    await session.commit()
    return job


@pytest.fixture
async def in_progress_job(session, accepted_job):
    await start_job(session, accepted_job.id, "alice", *AUSTIN)
    await session.commit()
    return accepted_job


async def test_create_job_prices_from_preset(job):
    assert job.status == JobStatus.PENDING_DISPATCH
    assert job.payout_amount == Decimal("99")
    assert job.sla_due_at is None
    assert job.assigned_agent_id is None
    assert job.version == 1


async def test_create_job_unknown_property(session):
    with pytest.raises(PropertyNotFoundError):
        await create_job(session, uuid4(), ScopePreset.EXTERIOR_ONLY)


async def test_load_unknown_job(session):
    with pytest.raises(JobNotFoundError):
        await load_job(session, uuid4())


async def test_dispatch_sets_deadline_and_notifies_agents_in_range(session, job, make_agent):
    await make_agent("alice", NEAR_AUSTIN)
    await make_agent("bob", SAN_ANTONIO)
    await make_agent("carol", NEAR_AUSTIN, verified=False)
    await make_agent("dave", SAN_ANTONIO, coverage=100)

    dispatched, notifications = await dispatch_job(session, job.id)
    await session.commit()

    assert dispatched.status == JobStatus.DISPATCHED
    assert dispatched.dispatched_at is not None
    assert as_utc(dispatched.sla_due_at) == as_utc(dispatched.created_at) + timedelta(hours=48)

    # Nearest first; bob's 25 mile radius does not reach Austin, dave's 100 does
    assert [n.user_id for n in notifications] == ["alice", "dave"]
    assert all(n.type == NotificationType.JOB_AVAILABLE for n in notifications)
    assert notifications[0].user_email == "alice@example.com"
    assert notifications[0].job["property"]["city"] == "Austin"
    assert notifications[0].job["payout_amount"] == "99.00"


async def test_dispatch_without_agents_still_dispatches(session, job):
    dispatched, notifications = await dispatch_job(session, job.id)
    assert dispatched.status == JobStatus.DISPATCHED
    assert notifications == []


async def test_dispatch_twice_is_rejected(session, job):
    await dispatch_job(session, job.id)
    with pytest.raises(InvalidStateError):
        await dispatch_job(session, job.id)


async def test_accept_assigns_agent(session, job, alice):
    await dispatch_job(session, job.id)
    accepted = await accept_job(session, job.id, "alice")

    assert accepted.status == JobStatus.ACCEPTED
    assert accepted.assigned_agent_id == "alice"
    assert accepted.accepted_at is not None
    assert accepted.version == 3


async def test_second_accept_loses(session, job, make_agent):
    await make_agent("alice")
    await make_agent("bob")
    await dispatch_job(session, job.id)
    await accept_job(session, job.id, "alice")

    with pytest.raises(AlreadyAssignedError):
        await accept_job(session, job.id, "bob")


async def test_concurrent_accept_has_one_winner(session, session_factory, job, make_agent):
    await make_agent("alice")
    await make_agent("bob")
    await dispatch_job(session, job.id)
    await session.commit()

    async with session_factory() as session_a, session_factory() as session_b:
        # Both agents read the job while it is still unclaimed
        await load_job(session_a, job.id)
        await load_job(session_b, job.id)

        await accept_job(session_a, job.id, "alice")
        await session_a.commit()

        with pytest.raises(AlreadyAssignedError):
            await accept_job(session_b, job.id, "bob")
        await session_b.rollback()

    async with session_factory() as fresh:
        stored = await fresh.get(Job, job.id)
        assert stored.assigned_agent_id == "alice"
        assert stored.version == 3


async def test_accept_requires_dispatch(session, job, alice):
    with pytest.raises(InvalidStateError):
        await accept_job(session, job.id, "alice")


async def test_unverified_agent_cannot_accept(session, job, make_agent):
    await make_agent("mallory", verified=False)
    await dispatch_job(session, job.id)

    with pytest.raises(AgentNotEligibleError):
        await accept_job(session, job.id, "mallory")

    stored = await load_job(session, job.id)
    assert stored.status == JobStatus.DISPATCHED
    assert stored.assigned_agent_id is None
    assert stored.version == 2


async def test_unknown_agent_cannot_accept(session, job):
    await dispatch_job(session, job.id)

    with pytest.raises(AgentNotEligibleError):
        await accept_job(session, job.id, "no-such-agent")

    stored = await load_job(session, job.id)
    assert stored.status == JobStatus.DISPATCHED


async def test_deadline_is_fixed_at_dispatch(session, session_factory, job, alice, add_evidence):
    dispatched, _ = await dispatch_job(session, job.id)
    due = as_utc(dispatched.sla_due_at)
    assert due == as_utc(dispatched.created_at) + timedelta(hours=48)

    accepted = await accept_job(session, job.id, "alice")
    assert as_utc(accepted.sla_due_at) == due

    started = await start_job(session, job.id, "alice", *AUSTIN)
    assert as_utc(started.sla_due_at) == due

    await add_evidence(job.id, 5)
    submitted = await submit_job(session, job.id, "alice")
    assert as_utc(submitted.sla_due_at) == due

    completed = await complete_job(session, job.id)
    assert as_utc(completed.sla_due_at) == due
    await session.commit()

    async with session_factory() as fresh:
        stored = await fresh.get(Job, job.id)
        assert as_utc(stored.sla_due_at) == due


async def test_cancel_keeps_deadline(session, accepted_job):
    due = as_utc(accepted_job.sla_due_at)

    cancelled = await cancel_job(session, accepted_job.id)

    assert as_utc(cancelled.sla_due_at) == due


async def test_zero_radius_geofence_is_honored(session, property_row, alice):
    job = await create_job(session, property_row.id, ScopePreset.EXTERIOR_ONLY, geofence_radius_m=0)
    await dispatch_job(session, job.id)
    await accept_job(session, job.id, "alice")

    with pytest.raises(GeofenceViolationError) as exc:
        await start_job(session, job.id, "alice", *NEAR_AUSTIN)
    assert exc.value.radius_meters == 0

    started = await start_job(session, job.id, "alice", *AUSTIN)
    assert started.status == JobStatus.IN_PROGRESS


def test_unlisted_job_type_uses_default_rules():
    assert geofence_radius(Job(job_type="onsite_photos", geofence_radius_m=None)) == 100.0

    rules = rules_for("drive_by")
    assert rules.geofence_radius_m == settings.DEFAULT_GEOFENCE_RADIUS_METERS
    assert rules.min_evidence == settings.DEFAULT_MIN_EVIDENCE
    assert geofence_radius(Job(job_type="drive_by", geofence_radius_m=None)) == rules.geofence_radius_m


async def test_start_outside_geofence(session, accepted_job):
    with pytest.raises(GeofenceViolationError) as exc:
        await start_job(session, accepted_job.id, "alice", *NEAR_AUSTIN)

    assert "within 100m" in str(exc.value)
    assert exc.value.distance_meters > 3000

    stored = await load_job(session, accepted_job.id)
    assert stored.status == JobStatus.ACCEPTED


async def test_start_on_site(session, accepted_job):
    started = await start_job(session, accepted_job.id, "alice", *AUSTIN)

    assert started.status == JobStatus.IN_PROGRESS
    assert started.geofence_distance_m == 0
    assert started.started_at is not None


async def test_start_by_another_agent(session, accepted_job, make_agent):
    await make_agent("bob")
    with pytest.raises(NotAssignedAgentError):
        await start_job(session, accepted_job.id, "bob", *AUSTIN)


async def test_start_before_accept(session, job):
    await dispatch_job(session, job.id)
    with pytest.raises(InvalidStateError):
        await start_job(session, job.id, "alice", *AUSTIN)


async def test_submit_needs_minimum_evidence(session, in_progress_job, add_evidence):
    await add_evidence(in_progress_job.id, 3)

    with pytest.raises(InsufficientEvidenceError) as exc:
        await submit_job(session, in_progress_job.id, "alice")
    assert str(exc.value) == "Minimum 5 photos required (3 captured)"

    await add_evidence(in_progress_job.id, 2)
    submitted = await submit_job(session, in_progress_job.id, "alice", notes="Gate code worked")

    assert submitted.status == JobStatus.SUBMITTED
    assert submitted.submission_notes == "Gate code worked"


async def test_complete_creates_one_earning(session, in_progress_job, add_evidence):
    await add_evidence(in_progress_job.id, 5)
    await submit_job(session, in_progress_job.id, "alice")
    completed = await complete_job(session, in_progress_job.id)
    await session.commit()

    assert completed.status == JobStatus.COMPLETED

    earnings = (await session.execute(
        select(PendingEarning).where(PendingEarning.source_job_id == completed.id)
    )).scalars().all()
    assert len(earnings) == 1
    assert earnings[0].payee_id == "alice"
    assert earnings[0].amount == Decimal("99")
    assert earnings[0].status == EarningStatus.PENDING

    with pytest.raises(InvalidStateError):
        await complete_job(session, completed.id)


async def test_complete_requires_submission(session, accepted_job):
    with pytest.raises(InvalidStateError):
        await complete_job(session, accepted_job.id)


async def test_cancel_clears_assignment(session, accepted_job):
    cancelled = await cancel_job(session, accepted_job.id, reason="Owner rescheduled")
    await session.commit()

    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.assigned_agent_id is None
    assert cancelled.cancellation_reason == "Owner rescheduled"

    earnings = (await session.execute(select(PendingEarning))).scalars().all()
    assert earnings == []

    with pytest.raises(InvalidStateError):
        await cancel_job(session, accepted_job.id)


async def test_cancel_pending_job(session, job):
    cancelled = await cancel_job(session, job.id)
    assert cancelled.status == JobStatus.CANCELLED


async def test_audit_trail_records_every_transition(session, in_progress_job, add_evidence):
    await add_evidence(in_progress_job.id, 5)
    await submit_job(session, in_progress_job.id, "alice")
    await complete_job(session, in_progress_job.id)
    await session.commit()

    events = (await session.execute(
        select(JobEventLog).where(JobEventLog.job_id == in_progress_job.id).order_by(JobEventLog.id)
    )).scalars().all()

    assert [e.event_type for e in events] == [
        "created", "dispatched", "accepted", "started", "submitted", "completed",
    ]
    assert events[2].meta == {"from": "dispatched", "to": "accepted", "agent_id": "alice"}
