from prometheus_client import Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOB_TRANSITIONS = Counter('job_transitions_total', 'Lifecycle transitions applied', ['action'])
JOBS_BY_STATUS = Gauge('jobs_by_status', 'Number of jobs per lifecycle status', ['status'])
GEOFENCE_REJECTIONS = Counter('geofence_rejections_total', 'Start attempts rejected by the geofence')
EARNINGS_CREATED = Counter('earnings_created_total', 'Pending earnings created on job completion')

NOTIFICATION_DELIVERIES = Counter(
    "notification_deliveries_total",
    "Notification delivery outcomes",
    ["result"] # success|retry|failed
)

NOTIFICATION_QUEUE_DEPTH = Gauge(
    "notification_queue_depth",
    "Notifications waiting in the retry queue"
)

PAYOUT_RESULTS = Counter(
    "payout_results_total",
    "Per-payee payout run outcomes",
    ["status"] # processed|skipped|failed
)

PAYOUT_AMOUNT = Counter('payout_amount_total', 'Total amount moved to PROCESSING by payout runs')

SLA_BREACHES = Gauge('sla_breached_jobs', 'Active jobs past their SLA deadline')

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
