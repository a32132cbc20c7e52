"""
Conversation directory.

WHAT: A user's inbox: every conversation joined with counterpart, listing and latest message
WHY: The inbox is a cache of store state that must follow feed pushes without losing
     the conversation the user has open
HOW: Batch joins per fetch; ConversationInbox keeps selection across background refreshes
     triggered by a per-user change-feed channel
"""

from typing import Callable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from ..core.database import store_session
from ..core.feed import ChangeEvent, ChangeFeed, Channel, change_feed
from ..core.models import Conversation, Listing
from ..models.marketplace import ConversationSummary, ConversationView
from ..utils.clock import utcnow
from ..utils.exceptions import MarketplaceError, NotFoundError, ValidationError
from ..utils.logger import get_logger
from .lookups import conversation_view, fetch_listing_snapshots, fetch_profiles, message_view

logger = get_logger(__name__)


async def list_conversations(user_id: str) -> List[ConversationSummary]:
    """
    All conversations the user takes part in, most recent activity first.

    WHAT: Inbox rows with counterpart profile, listing snapshot, last message, unread count
    WHY: Single fetch that the inbox view re-runs on every relevant feed event
    HOW: One conversation query (messages eager-loaded), then batch profile and listing lookups
    """
    with store_session("list conversations") as db:
        conversations = (
            db.query(Conversation)
            .options(selectinload(Conversation.messages))
            .filter(or_(Conversation.buyer_id == user_id, Conversation.seller_id == user_id))
            .order_by(Conversation.last_message_at.desc())
            .all()
        )

        profiles = fetch_profiles(
            db, (conversation.counterpart_of(user_id) for conversation in conversations)
        )
        listings = fetch_listing_snapshots(
            db, (conversation.listing_id for conversation in conversations)
        )

        summaries = []
        for conversation in conversations:
            messages = conversation.messages
            last = max(messages, key=lambda m: m.created_at) if messages else None
            unread = sum(
                1 for m in messages if m.sender_id != user_id and m.read_at is None
            )
            counterpart_id = conversation.counterpart_of(user_id)
            summaries.append(ConversationSummary(
                **conversation.to_dict(),
                counterpart=profiles[counterpart_id],
                listing=listings.get(conversation.listing_id),
                last_message=message_view(last) if last else None,
                unread_count=unread,
                role="buyer" if conversation.buyer_id == user_id else "seller",
            ))

    summaries.sort(key=lambda summary: summary.last_message_at, reverse=True)
    return summaries


def _find_conversation(db, listing_id: str, buyer_id: str, seller_id: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter_by(listing_id=listing_id, buyer_id=buyer_id, seller_id=seller_id)
        .first()
    )


async def listing_owner(listing_id: str) -> str:
    """Owner id of a listing, for callers that only know the listing."""
    with store_session("load listing owner") as db:
        listing = db.get(Listing, listing_id)
        if listing is None:
            raise NotFoundError("listing", listing_id)
        return listing.owner_id


async def find_or_create_conversation(listing_id: str, buyer_id: str, seller_id: str) -> ConversationView:
    """
    Return the conversation for (listing, buyer, seller), creating it on first contact.

    Raises:
        NotFoundError: listing missing
        ValidationError: seller is not the listing owner, or buyer is the seller
    """
    try:
        with store_session("find or create conversation") as db:
            listing = db.get(Listing, listing_id)
            if listing is None:
                raise NotFoundError("listing", listing_id)
            if buyer_id == seller_id:
                raise ValidationError(
                    "You cannot message yourself about your own listing",
                    field="buyer_id",
                    code="SELF_CONVERSATION_FORBIDDEN"
                )
            if listing.owner_id != seller_id:
                raise ValidationError(
                    "Seller does not own this listing",
                    field="seller_id",
                    code="SELLER_MISMATCH"
                )

            existing = _find_conversation(db, listing_id, buyer_id, seller_id)
            if existing is not None:
                return conversation_view(existing)

            now = utcnow()
            conversation = Conversation(
                listing_id=listing_id,
                buyer_id=buyer_id,
                seller_id=seller_id,
                created_at=now,
                last_message_at=now
            )
            db.add(conversation)
            db.flush()
            view = conversation_view(conversation)
    except IntegrityError:
        # a concurrent call created it between our read and write;
        # unique_conversation_triple lets exactly one insert win
        with store_session("find conversation") as db:
            existing = _find_conversation(db, listing_id, buyer_id, seller_id)
            if existing is None:
                raise
            logger.info(f"Conversation create lost a race, reusing {existing.id}")
            return conversation_view(existing)

    logger.info(f"Created conversation {view.id} for listing {listing_id}")
    return view


class ConversationInbox:
    """
    Stateful inbox view for one signed-in user.

    WHAT: Conversation list plus the currently selected conversation
    WHY: Feed-triggered refreshes must not yank the open conversation away
    HOW: load() may auto-select (deep link, else first); refresh() never auto-selects
         and only clears the selection when the selected conversation disappeared

    Usage:
        async with ConversationInbox(user_id, requested_conversation_id=deep_link) as inbox:
            inbox.selected
    """

    def __init__(
        self,
        user_id: str,
        *,
        requested_conversation_id: Optional[str] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        self.user_id = user_id
        self.requested_conversation_id = requested_conversation_id
        self.feed = feed or change_feed
        self.conversations: List[ConversationSummary] = []
        self.selected_id: Optional[str] = None
        self.loading = False
        self.last_error: Optional[Exception] = None
        self._channel: Optional[Channel] = None
        self._listeners: List[Callable[["ConversationInbox"], None]] = []

    @property
    def selected(self) -> Optional[ConversationSummary]:
        return next((c for c in self.conversations if c.id == self.selected_id), None)

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.conversations)

    def add_listener(self, listener: Callable[["ConversationInbox"], None]) -> Callable[[], None]:
        """Register a re-render callback; returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Inbox listener failed: {e}", exc_info=True)

    def select(self, conversation_id: Optional[str]):
        if conversation_id is not None and not any(c.id == conversation_id for c in self.conversations):
            raise NotFoundError("conversation", conversation_id)
        self.selected_id = conversation_id
        self._notify()

    async def load(self) -> List[ConversationSummary]:
        """Initial load: errors propagate, auto-selection allowed."""
        self.loading = True
        try:
            conversations = await list_conversations(self.user_id)
        finally:
            self.loading = False
        self._apply(conversations, allow_auto_select=True)
        return self.conversations

    async def refresh(self) -> List[ConversationSummary]:
        """
        Silent background refresh.

        Read failures are logged and swallowed; the stale list stays on screen.
        """
        try:
            conversations = await list_conversations(self.user_id)
        except MarketplaceError as e:
            self.last_error = e
            logger.warning(f"Background inbox refresh failed for {self.user_id}: {e}")
            return self.conversations
        self.last_error = None
        self._apply(conversations, allow_auto_select=False)
        return self.conversations

    def _apply(self, conversations: List[ConversationSummary], allow_auto_select: bool):
        self.conversations = conversations
        ids = {c.id for c in conversations}

        if self.selected_id is not None:
            if self.selected_id not in ids:
                logger.info(f"Selected conversation {self.selected_id} is gone, clearing selection")
                self.selected_id = None
        elif allow_auto_select:
            if self.requested_conversation_id in ids:
                self.selected_id = self.requested_conversation_id
            elif conversations:
                self.selected_id = conversations[0].id

        self._notify()

    # ========== Feed lifecycle ==========

    async def open(self) -> "ConversationInbox":
        """Initial load, then follow the feed."""
        await self.load()
        channel = self.feed.channel(f"conversation-updates-{self.user_id}")
        channel.on("messages", self._on_message_change)
        channel.on("conversations", self._on_conversation_change,
                   operation="INSERT", column="buyer_id", value=self.user_id)
        channel.on("conversations", self._on_conversation_change,
                   operation="INSERT", column="seller_id", value=self.user_id)
        self._channel = await channel.subscribe()
        return self

    async def close(self):
        if self._channel is not None:
            await self.feed.remove_channel(self._channel)
            self._channel = None

    async def __aenter__(self) -> "ConversationInbox":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _on_message_change(self, event: ChangeEvent):
        await self.refresh()

    async def _on_conversation_change(self, event: ChangeEvent):
        await self.refresh()
