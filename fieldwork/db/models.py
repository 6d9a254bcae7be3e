from datetime import datetime
from decimal import Decimal
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Float, Boolean, Numeric, DateTime, ForeignKey, Index, Text, JSON, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from fieldwork.db.session import Base
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import JobStatus, JobEvent, EarningStatus, PayoutStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2, asdecimal=True)


class Property(Base):
    """Read-only reference data owned by the property registry."""
    __tablename__ = "properties"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    address_line1: Mapped[str] = mapped_column(String, nullable=False)
    city: Mapped[str] = mapped_column(String, nullable=False)
    state: Mapped[str] = mapped_column(String, default="TX")
    zip_code: Mapped[str] = mapped_column(String, nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)

    @property
    def address_full(self) -> str:
        return f"{self.address_line1}, {self.city}, {self.state} {self.zip_code}"


class AgentProfile(Base):
    """Read-only reference data owned by the agent registry."""
    __tablename__ = "agent_profiles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, default="")
    name: Mapped[str] = mapped_column(String, default="")

    home_base_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    home_base_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    coverage_radius_miles: Mapped[float] = mapped_column(Float, default=25.0)

    verified: Mapped[bool] = mapped_column(Boolean, default=False)
    # Connected account at the payout provider; null means no payout method
    payout_account_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    property_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("properties.id"), index=True, nullable=False)

    # Lifecycle (written only by fieldwork.commands)
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING_DISPATCH, index=True)
    assigned_agent_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("agent_profiles.user_id"), nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Scope and pricing
    job_type: Mapped[str] = mapped_column(String, default="onsite_photos")
    scope_preset: Mapped[str] = mapped_column(String, nullable=False)
    payout_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    geofence_radius_m: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    geofence_distance_m: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    sla_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Free text
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_contact: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    submission_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    property: Mapped["Property"] = relationship("Property", lazy="joined")
    evidence: Mapped[list["EvidenceItem"]] = relationship("EvidenceItem", back_populates="job")
    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job")

    __table_args__ = (
        # Dispatch board: DISPATCHED jobs nobody claimed yet
        Index("ix_jobs_open", "status", "assigned_agent_id"),
    )


class EvidenceItem(Base):
    """Immutable capture owned by the evidence store."""
    __tablename__ = "evidence_items"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id"), index=True, nullable=False)
    kind: Mapped[str] = mapped_column(String, default="photo")
    storage_key: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    job: Mapped["Job"] = relationship("Job", back_populates="evidence")


class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Context (e.g. agent_id, distance, escalation level)
    meta: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")


class PendingEarning(Base):
    """Payment ledger row: money owed for one completed job."""
    __tablename__ = "earnings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    payee_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    # Unique: exactly one earning per completed job
    source_job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id"), unique=True, nullable=False)
    status: Mapped[EarningStatus] = mapped_column(String, default=EarningStatus.PENDING, index=True)
    payout_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("payouts.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class Payout(Base):
    """One disbursement instruction summarizing a payee's batch of earnings."""
    __tablename__ = "payouts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    payee_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    earnings_count: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[PayoutStatus] = mapped_column(String, default=PayoutStatus.PROCESSING, index=True)
    description: Mapped[str] = mapped_column(String, default="")
    transfer_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
