import asyncio
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from fieldwork.api.v1.metrics import NOTIFICATION_DELIVERIES, NOTIFICATION_QUEUE_DEPTH
from fieldwork.domain.models import NotificationPayload, QueuedNotification
from fieldwork.domain.retry import backoff_delay
from fieldwork.domain.sla import utcnow
from fieldwork.domain.states import NotificationType
from fieldwork.services.channels import EmailSender, PushSender
from fieldwork.settings import settings

logger = logging.getLogger(__name__)

PUSH_TITLES = {
    NotificationType.JOB_AVAILABLE: "New Job Available",
    NotificationType.JOB_REMINDER: "Job Reminder",
    NotificationType.JOB_ESCALATION: "Urgent: Job Needs Attention",
}


def render_email(payload: NotificationPayload) -> dict[str, Any]:
    job = payload.job
    return {
        "agent_name": payload.user_name,
        "property_address": job["property"]["address_full"],
        "job_id": job["id"],
        "deadline": job.get("sla_due_at"),
        "payout": job["payout_amount"],
        "type": str(payload.type),
    }


def render_push(payload: NotificationPayload) -> dict[str, Any]:
    job = payload.job
    prop = job["property"]
    return {
        "title": PUSH_TITLES[NotificationType(payload.type)],
        "body": f"${job['payout_amount']} - {prop['address_line1']}, {prop['city']}",
        "data": {"url": f"/agent/jobs/{job['id']}", "jobId": job["id"]},
    }


class NotificationRetryQueue:
    """
    In-memory retry queue for agent notifications.

    Records live in a dict guarded by a lock; scans work on a snapshot so
    lifecycle code can keep enqueueing while a pass is running. Delivery
    failures stay inside the queue and never reach the code that enqueued.
    Records are lost on process restart.
    """

    def __init__(
        self,
        email_channel: Optional[EmailSender] = None,
        push_channel: Optional[PushSender] = None,
        max_attempts: Optional[int] = None,
        send_timeout: Optional[float] = None,
    ):
        self.email_channel = email_channel
        self.push_channel = push_channel
        self.max_attempts = max_attempts or settings.NOTIFICATION_MAX_ATTEMPTS
        self.send_timeout = send_timeout or settings.NOTIFICATION_SEND_TIMEOUT_SECONDS
        self._queue: dict[str, QueuedNotification] = {}
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    def enqueue(self, payload: NotificationPayload, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        notification_id = f"{payload.user_id}-{payload.job['id']}-{uuid4().hex[:8]}"
        record = QueuedNotification(
            id=notification_id,
            payload=payload,
            attempts=0,
            max_attempts=self.max_attempts,
            next_retry_at=now,
            created_at=now,
        )
        with self._lock:
            self._queue[notification_id] = record
            NOTIFICATION_QUEUE_DEPTH.set(len(self._queue))
        return notification_id

    async def _deliver(self, payload: NotificationPayload):
        # Each send is bounded; a hung provider counts as a failed attempt.
        if payload.user_email and self.email_channel:
            await asyncio.wait_for(
                self.email_channel.send(payload.user_email, render_email(payload)),
                timeout=self.send_timeout,
            )
        if self.push_channel:
            await asyncio.wait_for(
                self.push_channel.send(payload.user_id, render_push(payload)),
                timeout=self.send_timeout,
            )

    async def process_once(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Attempts every record whose next_retry_at has passed.

        Success removes the record. A failure reschedules it with exponential
        backoff until max_attempts, after which it is dropped for good.
        """
        now = now or utcnow()
        processed = succeeded = failed = requeued = 0

        with self._lock:
            due = [
                n for n in self._queue.values()
                if n.next_retry_at <= now and n.id not in self._in_flight
            ]
            self._in_flight.update(n.id for n in due)

        for notification in due:
            processed += 1
            notification.attempts += 1
            try:
                await self._deliver(notification.payload)
                error = None
            except asyncio.TimeoutError:
                error = f"Send timed out after {self.send_timeout}s"
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

            with self._lock:
                self._in_flight.discard(notification.id)

                if error is None:
                    succeeded += 1
                    self._queue.pop(notification.id, None)
                    NOTIFICATION_DELIVERIES.labels(result="success").inc()
                    self._log_result(notification, "SUCCESS")
                elif notification.attempts < notification.max_attempts:
                    delay = backoff_delay(notification.attempts)
                    notification.next_retry_at = now + delay
                    notification.last_error = error
                    requeued += 1
                    NOTIFICATION_DELIVERIES.labels(result="retry").inc()
                    logger.warning(
                        "Notification %s queued for retry %d/%d in %ss: %s",
                        notification.id, notification.attempts, notification.max_attempts,
                        delay.total_seconds(), error,
                    )
                else:
                    failed += 1
                    notification.last_error = error
                    self._queue.pop(notification.id, None)
                    NOTIFICATION_DELIVERIES.labels(result="failed").inc()
                    self._log_result(notification, "FAILED", error)

                NOTIFICATION_QUEUE_DEPTH.set(len(self._queue))

        return {"processed": processed, "succeeded": succeeded, "failed": failed, "requeued": requeued}

    def _log_result(self, notification: QueuedNotification, status: str, error: Optional[str] = None):
        payload = notification.payload
        message = (
            f"[NotificationQueue] Delivery {status} for user {payload.user_id}, "
            f"job {payload.job['id']}, type {payload.type}, attempts: {notification.attempts}"
        )
        if error:
            logger.error(f"{message}, error: {error}")
        else:
            logger.info(message)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._queue.values())

        pending_by_attempt = Counter(n.attempts for n in records)
        oldest = min((n.created_at for n in records), default=None)
        return {
            "pending": len(records),
            "pending_by_attempt": dict(pending_by_attempt),
            "oldest_in_queue": oldest,
        }

    def get(self, notification_id: str) -> Optional[QueuedNotification]:
        with self._lock:
            return self._queue.get(notification_id)

    def remove(self, notification_id: str) -> bool:
        with self._lock:
            removed = self._queue.pop(notification_id, None) is not None
            NOTIFICATION_QUEUE_DEPTH.set(len(self._queue))
        return removed

    def clear(self):
        with self._lock:
            self._queue.clear()
            NOTIFICATION_QUEUE_DEPTH.set(0)


class NotificationProcessor:
    def __init__(self, queue: NotificationRetryQueue, interval: Optional[float] = None):
        self.queue = queue
        self.interval = interval or settings.NOTIFICATION_PROCESS_INTERVAL_SECONDS
        self.running = False
        self._task = None

    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self.run_loop())
        logger.info("NotificationProcessor started.")

    async def stop(self):
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("NotificationProcessor stopped.")

    async def run_loop(self):
        while self.running:
            try:
                stats = await self.queue.process_once()
                if stats["processed"] > 0:
                    logger.info(
                        "[NotificationQueue] Processed: %d, Succeeded: %d, Failed: %d, Requeued: %d",
                        stats["processed"], stats["succeeded"], stats["failed"], stats["requeued"],
                    )
            except Exception as e:
                logger.error(f"Error in NotificationProcessor: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
