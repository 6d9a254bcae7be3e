from enum import StrEnum, auto

from fieldwork.domain.errors import InvalidStateError


class JobStatus(StrEnum):
    PENDING_DISPATCH = auto()  # Created, not yet offered to agents
    DISPATCHED = auto()        # Offered to the agent pool
    ACCEPTED = auto()          # Claimed by one agent
    IN_PROGRESS = auto()       # Agent checked in on site
    SUBMITTED = auto()         # Evidence handed in, awaiting review
    COMPLETED = auto()         # Review passed, earning created
    CANCELLED = auto()


class JobAction(StrEnum):
    DISPATCH = auto()
    ACCEPT = auto()
    START = auto()
    SUBMIT = auto()
    COMPLETE = auto()
    CANCEL = auto()


class JobEvent(StrEnum):
    CREATED = auto()
    DISPATCHED = auto()
    ACCEPTED = auto()
    STARTED = auto()
    SUBMITTED = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    SLA_REMINDER = auto()
    SLA_ESCALATED = auto()


class EarningStatus(StrEnum):
    PENDING = auto()
    PROCESSING = auto()
    COMPLETED = auto()
    FAILED = auto()


class PayoutStatus(StrEnum):
    PROCESSING = auto()
    COMPLETED = auto()
    FAILED = auto()


class NotificationType(StrEnum):
    JOB_AVAILABLE = "JOB_AVAILABLE"
    JOB_REMINDER = "JOB_REMINDER"
    JOB_ESCALATION = "JOB_ESCALATION"


TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

ASSIGNED_STATES = frozenset({
    JobStatus.ACCEPTED,
    JobStatus.IN_PROGRESS,
    JobStatus.SUBMITTED,
    JobStatus.COMPLETED,
})

TRANSITIONS: dict[tuple[JobStatus, JobAction], JobStatus] = {
    (JobStatus.PENDING_DISPATCH, JobAction.DISPATCH): JobStatus.DISPATCHED,
    (JobStatus.DISPATCHED, JobAction.ACCEPT): JobStatus.ACCEPTED,
    (JobStatus.ACCEPTED, JobAction.START): JobStatus.IN_PROGRESS,
    (JobStatus.IN_PROGRESS, JobAction.SUBMIT): JobStatus.SUBMITTED,
    (JobStatus.SUBMITTED, JobAction.COMPLETE): JobStatus.COMPLETED,
}
TRANSITIONS.update({
    (status, JobAction.CANCEL): JobStatus.CANCELLED
    for status in JobStatus
    if status not in TERMINAL_STATES
})


def next_status(current: JobStatus, action: JobAction) -> JobStatus:
    """
    Looks up the target state for `action` taken from `current`.
    Raises InvalidStateError for any pair missing from the table.
    """
    try:
        return TRANSITIONS[(JobStatus(current), action)]
    except KeyError:
        raise InvalidStateError(current, action) from None
