class JobError(Exception):
    """Base exception for job lifecycle errors."""
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class PropertyNotFoundError(JobError):
    def __init__(self, property_id):
        super().__init__(f"Property {property_id} not found")

class InvalidStateError(JobError):
    def __init__(self, current_status, action):
        self.current_status = current_status
        self.action = action
        super().__init__(f"Cannot {action} a job in status {current_status}")

class AlreadyAssignedError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} is already assigned to another agent")

class NotAssignedAgentError(JobError):
    def __init__(self, job_id, agent_id):
        super().__init__(f"Job {job_id} is not assigned to agent {agent_id}")

class AgentNotEligibleError(JobError):
    def __init__(self, agent_id):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is not verified to accept jobs")

class GeofenceViolationError(JobError):
    def __init__(self, radius_meters: float, distance_meters: float):
        self.radius_meters = radius_meters
        self.distance_meters = distance_meters
        super().__init__(
            f"You must be within {radius_meters:.0f}m of the property to start this job "
            f"(currently {distance_meters:.0f}m away)"
        )

class InsufficientEvidenceError(JobError):
    def __init__(self, required: int, actual: int):
        self.required = required
        self.actual = actual
        super().__init__(f"Minimum {required} photos required ({actual} captured)")

class InvalidDurationError(JobError):
    def __init__(self, sla_hours):
        super().__init__(f"SLA hours must be positive, got {sla_hours}")


class PayoutError(Exception):
    """Base exception for payout run errors."""
    pass

class NoPayoutMethodError(PayoutError):
    def __init__(self, payee_id):
        self.payee_id = payee_id
        super().__init__("No payout method configured")

class TransferError(PayoutError):
    pass
