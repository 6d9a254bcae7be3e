from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from fieldwork.db.session import get_db_session
from fieldwork.services.notifications import NotificationRetryQueue
from fieldwork.services.payouts import PayoutScheduler

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_notification_queue(request: Request) -> NotificationRetryQueue:
    return request.app.state.notification_queue


def get_payout_scheduler(request: Request) -> PayoutScheduler:
    return request.app.state.payout_scheduler


NotificationQueue = Annotated[NotificationRetryQueue, Depends(get_notification_queue)]
Payouts = Annotated[PayoutScheduler, Depends(get_payout_scheduler)]
