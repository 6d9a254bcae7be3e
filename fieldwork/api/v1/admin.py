from dataclasses import asdict

from fastapi import APIRouter

from fieldwork.api.deps import NotificationQueue, Payouts

router = APIRouter()

@router.get("/notifications/stats")
async def notification_stats(queue: NotificationQueue):
    return queue.stats()

@router.post("/notifications/process")
async def trigger_notification_pass(queue: NotificationQueue):
    return await queue.process_once()

@router.get("/payouts/stats")
async def payout_stats(payouts: Payouts):
    return await payouts.stats()

@router.post("/payouts/run")
async def trigger_payout_run(payouts: Payouts):
    # Manual trigger; the weekly window is driven by the scheduler service
    result = await payouts.run()
    return asdict(result)
