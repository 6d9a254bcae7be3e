from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import NotificationType
from fieldwork.settings import settings


@dataclass(frozen=True)
class JobTypeRules:
    min_evidence: int
    geofence_radius_m: float


# Per job type overrides; anything missing falls back to the settings defaults.
JOB_TYPE_RULES: dict[str, JobTypeRules] = {
    "onsite_photos": JobTypeRules(min_evidence=5, geofence_radius_m=100.0),
}


def rules_for(job_type: str) -> JobTypeRules:
    return JOB_TYPE_RULES.get(
        job_type,
        JobTypeRules(
            min_evidence=settings.DEFAULT_MIN_EVIDENCE,
            geofence_radius_m=settings.DEFAULT_GEOFENCE_RADIUS_METERS,
        ),
    )


@dataclass
class NotificationPayload:
    user_id: str
    user_email: str
    user_name: str
    job: dict[str, Any]
    type: NotificationType


@dataclass
class QueuedNotification:
    id: str
    payload: NotificationPayload
    attempts: int = 0
    max_attempts: int = 3
    next_retry_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None


@dataclass
class PayeeBatch:
    payee_id: str
    amount: Decimal
    earning_ids: list = field(default_factory=list)

    @property
    def earnings_count(self) -> int:
        return len(self.earning_ids)


@dataclass
class PayoutResult:
    payee_id: str
    amount: Decimal
    earnings_count: int
    status: str  # PROCESSED | SKIPPED | FAILED
    reason: Optional[str] = None


@dataclass
class SchedulerResult:
    success: bool
    processed_count: int
    total_amount: Decimal
    results: list[PayoutResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
