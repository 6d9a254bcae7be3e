import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from fieldwork.settings import settings
from fieldwork.api.v1.jobs import router as jobs_router
from fieldwork.api.v1.admin import router as admin_router
from fieldwork.api.v1.metrics import router as metrics_router

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    from fieldwork.db.session import AsyncSessionLocal, create_tables
    from fieldwork.scheduler.service import SchedulerService
    from fieldwork.services.channels import EmailChannel, PushChannel
    from fieldwork.services.notifications import NotificationRetryQueue, NotificationProcessor
    from fieldwork.services.payouts import AccountPayoutDestination, PayoutScheduler

    logger = logging.getLogger("uvicorn")

    # 1. Schema (retry while the database container is still coming up)
    for i in range(10):
        try:
            await create_tables()
            break
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Bootstrap: database not ready ({e}), retrying in 2s... ({i+1}/10)")
            await asyncio.sleep(2)

    # 2. Notification queue and its processor
    email = None
    if settings.EMAIL_PROVIDER_URL:
        email = EmailChannel(
            settings.EMAIL_PROVIDER_URL,
            api_key=settings.EMAIL_PROVIDER_API_KEY,
            timeout=settings.NOTIFICATION_SEND_TIMEOUT_SECONDS,
        )
    push = None
    if settings.PUSH_PROVIDER_URL:
        push = PushChannel(
            settings.PUSH_PROVIDER_URL,
            api_key=settings.PUSH_PROVIDER_API_KEY,
            timeout=settings.NOTIFICATION_SEND_TIMEOUT_SECONDS,
        )
    if not email and not push:
        logger.warning("No notification providers configured; notifications will only be logged.")

    queue = NotificationRetryQueue(email_channel=email, push_channel=push)
    processor = NotificationProcessor(queue)
    await processor.start()

    # 3. Payouts and the leader-elected scheduler
    destination = AccountPayoutDestination(
        AsyncSessionLocal,
        base_url=settings.PAYOUT_PROVIDER_URL,
        api_key=settings.PAYOUT_PROVIDER_API_KEY,
    )
    payout_scheduler = PayoutScheduler(AsyncSessionLocal, destination)
    scheduler = SchedulerService(queue, payout_scheduler)
    await scheduler.start()

    app.state.notification_queue = queue
    app.state.payout_scheduler = payout_scheduler

    yield

    # Shutdown
    await scheduler.stop()
    await processor.stop()
    await destination.close()
    for channel in (email, push):
        if channel:
            await channel.close()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
