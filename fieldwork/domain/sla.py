from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Optional, Union

from fieldwork.domain.errors import InvalidDurationError


class ScopePreset(StrEnum):
    EXTERIOR_ONLY = "EXTERIOR_ONLY"
    INTERIOR_EXTERIOR = "INTERIOR_EXTERIOR"
    COMPREHENSIVE = "COMPREHENSIVE"
    FULL_CERTIFIED = "FULL_CERTIFIED"
    RUSH_INSPECTION = "RUSH_INSPECTION"


class SLAStatus(StrEnum):
    ON_TRACK = "ON_TRACK"
    AT_RISK = "AT_RISK"
    BREACHED = "BREACHED"


class EscalationLevel(StrEnum):
    LEVEL_1 = "LEVEL_1"
    LEVEL_2 = "LEVEL_2"
    LEVEL_3 = "LEVEL_3"
    CRITICAL = "CRITICAL"


ESCALATION_ORDER = [
    EscalationLevel.LEVEL_1,
    EscalationLevel.LEVEL_2,
    EscalationLevel.LEVEL_3,
    EscalationLevel.CRITICAL,
]


@dataclass(frozen=True)
class ScopeConfig:
    sla_hours: float
    payout_amount: Decimal


SCOPE_CONFIG: dict[ScopePreset, ScopeConfig] = {
    ScopePreset.EXTERIOR_ONLY: ScopeConfig(48, Decimal("99")),
    ScopePreset.INTERIOR_EXTERIOR: ScopeConfig(72, Decimal("199")),
    ScopePreset.COMPREHENSIVE: ScopeConfig(120, Decimal("349")),
    ScopePreset.FULL_CERTIFIED: ScopeConfig(168, Decimal("549")),
    ScopePreset.RUSH_INSPECTION: ScopeConfig(24, Decimal("299")),
}

AT_RISK_HOURS = 2


@dataclass(frozen=True)
class TimeRemaining:
    remaining: timedelta
    days: int
    hours: int
    minutes: int

    @property
    def overdue(self) -> bool:
        return self.remaining.total_seconds() <= 0

    @property
    def label(self) -> str:
        if self.overdue:
            return "Overdue"
        if self.days:
            return f"{self.days}d {self.hours}h remaining"
        if self.hours:
            return f"{self.hours}h {self.minutes}m remaining"
        return f"{self.minutes}m remaining"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Some backends (sqlite) hand back naive datetimes for timezone=True columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def scope_config(preset: Union[ScopePreset, str]) -> ScopeConfig:
    return SCOPE_CONFIG[ScopePreset(preset)]


def due_at(scope: Union[ScopePreset, str, float, int], created_at: datetime) -> datetime:
    """
    Computes the SLA deadline for a job.

    Args:
        scope: A scope preset (looked up in SCOPE_CONFIG) or a raw number of SLA hours.
        created_at: Reference point the SLA window starts from.

    Raises:
        InvalidDurationError: if the resolved SLA hours are not positive.
    """
    if isinstance(scope, (int, float)) and not isinstance(scope, bool):
        sla_hours = scope
    else:
        sla_hours = scope_config(scope).sla_hours

    if sla_hours <= 0:
        raise InvalidDurationError(sla_hours)

    return created_at + timedelta(hours=sla_hours)


def time_remaining(due: datetime, now: Optional[datetime] = None) -> TimeRemaining:
    """
    Signed time left until `due` (negative when overdue) with a
    days/hours/minutes breakdown of the positive part for progress display.
    """
    now = as_utc(now) if now else utcnow()
    remaining = as_utc(due) - now

    total_minutes = max(0, int(remaining.total_seconds() // 60))
    total_hours, minutes = divmod(total_minutes, 60)
    days, hours = divmod(total_hours, 24)
    return TimeRemaining(remaining=remaining, days=days, hours=hours, minutes=minutes)


def sla_status(due: datetime, now: Optional[datetime] = None) -> SLAStatus:
    hours_left = time_remaining(due, now).remaining.total_seconds() / 3600
    if hours_left < 0:
        return SLAStatus.BREACHED
    if hours_left < AT_RISK_HOURS:
        return SLAStatus.AT_RISK
    return SLAStatus.ON_TRACK


def escalation_level(actual_hours: float, sla_hours: float) -> EscalationLevel:
    if sla_hours <= 0:
        raise InvalidDurationError(sla_hours)

    overdue_ratio = actual_hours / sla_hours
    if overdue_ratio >= 4:
        return EscalationLevel.CRITICAL
    if overdue_ratio >= 2.5:
        return EscalationLevel.LEVEL_3
    if overdue_ratio >= 1.5:
        return EscalationLevel.LEVEL_2
    return EscalationLevel.LEVEL_1
