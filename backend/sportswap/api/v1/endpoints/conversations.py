"""
Conversation and message endpoints.

WHAT: Inbox, find-or-create, history, send, mark read and the live message stream
WHY: HTTP surface of the conversation directory and message channel
HOW: JSON handlers over the services; SSE stream fed by a per-request feed channel
"""

import asyncio
import json
from datetime import datetime
from typing import AsyncIterator, List

from fastapi import APIRouter, Depends, Request, status
from sse_starlette.sse import EventSourceResponse

from ....core.config import settings
from ....core.feed import ChangeEvent, change_feed
from ....models.api_schemas import (
    FindConversationRequest,
    MarkReadResponse,
    MessageHistoryResponse,
    SendMessageRequest,
)
from ....models.marketplace import ConversationSummary, ConversationView, MessageView
from ....services import message_channel
from ....services.conversation_directory import (
    find_or_create_conversation,
    list_conversations,
    listing_owner,
)
from ....services.lookups import message_view_from_row
from ....utils.logger import get_logger
from ...deps import get_current_user_id

logger = get_logger(__name__)

router = APIRouter()


@router.get("/conversations", response_model=List[ConversationSummary])
async def get_conversations(user_id: str = Depends(get_current_user_id)):
    """Caller's inbox, most recent activity first."""
    return await list_conversations(user_id)


@router.post("/conversations", response_model=ConversationView)
async def open_conversation(
    request: FindConversationRequest,
    user_id: str = Depends(get_current_user_id)
):
    """Return the caller's conversation about a listing, creating it on first contact."""
    seller_id = request.seller_id or await listing_owner(request.listing_id)
    return await find_or_create_conversation(request.listing_id, user_id, seller_id)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageHistoryResponse)
async def get_messages(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    messages = await message_channel.load_history(conversation_id, user_id)
    return MessageHistoryResponse(conversation_id=conversation_id, messages=messages)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageView,
    status_code=status.HTTP_201_CREATED
)
async def post_message(
    conversation_id: str,
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id)
):
    return await message_channel.send_message(conversation_id, user_id, request.content)


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(conversation_id: str, user_id: str = Depends(get_current_user_id)):
    marked = await message_channel.mark_read(conversation_id, user_id)
    return MarkReadResponse(conversation_id=conversation_id, marked_read=marked)


async def message_event_generator(
    request: Request,
    conversation_id: str,
    user_id: str
) -> AsyncIterator[dict]:
    """
    Generate SSE events for new messages in a conversation.

    WHAT: One "message" event per inserted message
    WHY: Clients append live without polling
    HOW: A scoped feed channel pushes into a local queue; the channel is
         removed when the client disconnects
    """
    queue: asyncio.Queue = asyncio.Queue()

    def on_insert(event: ChangeEvent):
        queue.put_nowait(event.new)

    channel = change_feed.channel(f"sse-messages-{conversation_id}-{user_id}")
    channel.on("messages", on_insert, operation="INSERT",
               column="conversation_id", value=conversation_id)
    await channel.subscribe()

    yield {
        "event": "connected",
        "data": json.dumps({
            "type": "connected",
            "conversation_id": conversation_id,
            "timestamp": datetime.now().isoformat()
        })
    }

    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                row = await asyncio.wait_for(queue.get(), timeout=settings.SSE_HEARTBEAT_INTERVAL)
            except asyncio.TimeoutError:
                continue

            message = message_view_from_row(row)
            if message.sender_id != user_id:
                await message_channel.mark_message_read(message.id, user_id)
            yield {
                "event": "message",
                "data": message.model_dump_json()
            }
    finally:
        await change_feed.remove_channel(channel)
        logger.info(f"SSE message stream ended for {conversation_id} ({user_id})")


@router.get("/conversations/{conversation_id}/stream")
async def stream_messages(
    conversation_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id)
):
    """
    Stream new messages via SSE.

    Raises:
        NotFoundError / AuthorizationError: checked before the stream opens
    """
    # participant check up front so errors are plain HTTP responses
    await message_channel.load_history(conversation_id, user_id)
    logger.info(f"SSE message stream requested for {conversation_id} by {user_id}")

    return EventSourceResponse(
        message_event_generator(request, conversation_id, user_id),
        media_type="text/event-stream",
        ping=settings.SSE_HEARTBEAT_INTERVAL
    )
