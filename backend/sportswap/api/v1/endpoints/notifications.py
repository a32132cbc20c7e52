"""
Notification endpoints.

WHAT: Unread badge value and a live stream of badge/new-offer events
WHY: Navigation badges update across devices without polling
HOW: AccountNotifications bound to the caller for the lifetime of the SSE request
"""

import asyncio
import json
from datetime import datetime
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from ....core.config import settings
from ....models.api_schemas import UnreadCountResponse
from ....models.marketplace import NewOfferNotification
from ....services.notification_counter import AccountNotifications, count_unread_messages
from ....utils.logger import get_logger
from ...deps import get_current_user_id

logger = get_logger(__name__)

router = APIRouter()


@router.get("/notifications/unread-count", response_model=UnreadCountResponse)
async def unread_count(user_id: str = Depends(get_current_user_id)):
    total = await count_unread_messages(user_id)
    return UnreadCountResponse(user_id=user_id, unread_count=total)


async def notification_event_generator(request: Request, user_id: str) -> AsyncIterator[dict]:
    """
    Generate SSE events for one user's badges.

    Events:
        unread_count: {"unread_count": n} on every change (and once on connect)
        new_offer: NewOfferNotification payload
    """
    queue: asyncio.Queue = asyncio.Queue()

    def on_unread(total: int):
        queue.put_nowait({
            "event": "unread_count",
            "data": json.dumps({
                "type": "unread_count",
                "unread_count": total,
                "timestamp": datetime.now().isoformat()
            })
        })

    def on_new_offer(notification: NewOfferNotification):
        queue.put_nowait({
            "event": "new_offer",
            "data": notification.model_dump_json()
        })

    notifications = AccountNotifications(on_unread=on_unread, on_new_offer=on_new_offer)
    await notifications.bind_user(user_id)

    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=settings.SSE_HEARTBEAT_INTERVAL)
            except asyncio.TimeoutError:
                continue
            yield event
    finally:
        await notifications.close()
        logger.info(f"SSE notification stream ended for {user_id}")


@router.get("/notifications/stream")
async def stream_notifications(request: Request, user_id: str = Depends(get_current_user_id)):
    logger.info(f"SSE notification stream requested by {user_id}")
    return EventSourceResponse(
        notification_event_generator(request, user_id),
        media_type="text/event-stream",
        ping=settings.SSE_HEARTBEAT_INTERVAL
    )
