"""
Notification counter.

WHAT: Account-wide unread-message badge and "new offer on my listing" events
WHY: Badges live outside any single conversation and must follow every device's writes
HOW: Per-user feed channels; the unread total is recomputed from the store on each
     relevant event, new-offer events are resolved with a listing lookup and fired once
"""

from typing import Callable, List, Optional

from sqlalchemy import func, or_

from ..core.database import store_session
from ..core.feed import ChangeEvent, ChangeFeed, Channel, change_feed
from ..core.models import Conversation, Listing, Message
from ..models.marketplace import NewOfferNotification
from ..utils.exceptions import MarketplaceError
from ..utils.logger import get_logger

logger = get_logger(__name__)

UnreadCallback = Callable[[int], None]
OfferCallback = Callable[[NewOfferNotification], None]


async def count_unread_messages(user_id: str) -> int:
    """Messages addressed to the user (sent by the counterpart) that are still unread."""
    with store_session("count unread messages") as db:
        return (
            db.query(func.count(Message.id))
            .join(Conversation, Message.conversation_id == Conversation.id)
            .filter(
                or_(Conversation.buyer_id == user_id, Conversation.seller_id == user_id),
                Message.sender_id != user_id,
                Message.read_at.is_(None),
            )
            .scalar()
        ) or 0


def _call(listeners: list, value, label: str):
    for listener in list(listeners):
        try:
            listener(value)
        except Exception as e:
            logger.error(f"{label} listener failed: {e}", exc_info=True)


class UnreadCounter:
    """
    Observable unread-message total for one user.

    Recomputed from the store on every message insert/update; never patched.
    Subscribers are called with the new total whenever it changes.
    """

    def __init__(self, user_id: str, *, feed: Optional[ChangeFeed] = None):
        self.user_id = user_id
        self.feed = feed or change_feed
        self.value = 0
        self._listeners: List[UnreadCallback] = []
        self._channel: Optional[Channel] = None

    def subscribe(self, callback: UnreadCallback) -> Callable[[], None]:
        """Register a callback (called immediately with the current value)."""
        self._listeners.append(callback)
        callback(self.value)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    async def open(self) -> "UnreadCounter":
        await self.recompute(initial=True)
        channel = self.feed.channel(f"unread-count-{self.user_id}")
        channel.on("messages", self._on_message_change)
        self._channel = await channel.subscribe()
        return self

    async def close(self):
        if self._channel is not None:
            await self.feed.remove_channel(self._channel)
            self._channel = None
        self._listeners.clear()

    async def recompute(self, initial: bool = False) -> int:
        try:
            total = await count_unread_messages(self.user_id)
        except MarketplaceError as e:
            if initial:
                raise
            logger.warning(f"Unread count refresh failed for {self.user_id}: {e}")
            return self.value

        if total != self.value:
            self.value = total
            _call(self._listeners, total, "Unread count")
        return self.value

    async def _on_message_change(self, event: ChangeEvent):
        await self.recompute()


class NewOfferNotifier:
    """Fires once per offer inserted on a listing the user owns."""

    def __init__(self, user_id: str, *, feed: Optional[ChangeFeed] = None):
        self.user_id = user_id
        self.feed = feed or change_feed
        self._listeners: List[OfferCallback] = []
        self._seen: set = set()
        self._channel: Optional[Channel] = None

    def subscribe(self, callback: OfferCallback) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    async def open(self) -> "NewOfferNotifier":
        channel = self.feed.channel(f"new-offers-{self.user_id}")
        channel.on("offers", self._on_offer_insert, operation="INSERT")
        self._channel = await channel.subscribe()
        return self

    async def close(self):
        if self._channel is not None:
            await self.feed.remove_channel(self._channel)
            self._channel = None
        self._listeners.clear()

    async def _on_offer_insert(self, event: ChangeEvent):
        offer = event.new
        offer_id = offer.get("id")
        if not offer_id or offer_id in self._seen:
            return

        try:
            with store_session("resolve offer listing") as db:
                listing = db.get(Listing, offer["listing_id"])
                if listing is None or listing.owner_id != self.user_id:
                    return
                title = listing.title
        except MarketplaceError as e:
            logger.warning(f"Could not resolve listing for offer {offer_id}: {e}")
            return

        self._seen.add(offer_id)
        notification = NewOfferNotification(
            offer_id=offer_id,
            listing_id=offer["listing_id"],
            listing_title=title,
            buyer_id=offer["buyer_id"],
            amount=offer["amount"],
            created_at=offer["created_at"],
        )
        logger.info(f"New offer {offer_id} on listing {notification.listing_id} for {self.user_id}")
        _call(self._listeners, notification, "New offer")


async def subscribe_unread_count(
    user_id: str,
    callback: UnreadCallback,
    *,
    feed: Optional[ChangeFeed] = None,
) -> UnreadCounter:
    """Start an unread counter for the user; close() it to unsubscribe."""
    counter = await UnreadCounter(user_id, feed=feed).open()
    counter.subscribe(callback)
    return counter


async def subscribe_new_offer_notifications(
    user_id: str,
    callback: OfferCallback,
    *,
    feed: Optional[ChangeFeed] = None,
) -> NewOfferNotifier:
    """Start new-offer notifications for the user; close() it to unsubscribe."""
    notifier = await NewOfferNotifier(user_id, feed=feed).open()
    notifier.subscribe(callback)
    return notifier


class AccountNotifications:
    """
    Both badge signals bound to the signed-in user.

    WHAT: Holds the unread counter and new-offer notifier for the current user
    WHY: Signing out or switching accounts must not leave the previous user's channels live
    HOW: bind_user() closes the old pair before opening a new one; None means signed out

    Usage:
        notifications = AccountNotifications(on_unread=badge.set, on_new_offer=toast.show)
        await notifications.bind_user(user_id)
        ...
        await notifications.bind_user(None)
    """

    def __init__(
        self,
        *,
        on_unread: Optional[UnreadCallback] = None,
        on_new_offer: Optional[OfferCallback] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        self.on_unread = on_unread
        self.on_new_offer = on_new_offer
        self.feed = feed or change_feed
        self.user_id: Optional[str] = None
        self.unread: Optional[UnreadCounter] = None
        self.offers: Optional[NewOfferNotifier] = None

    @property
    def unread_count(self) -> int:
        return self.unread.value if self.unread else 0

    async def bind_user(self, user_id: Optional[str]):
        if user_id == self.user_id:
            return
        await self._teardown()
        self.user_id = user_id
        if user_id is None:
            if self.on_unread:
                self.on_unread(0)
            return

        self.unread = await UnreadCounter(user_id, feed=self.feed).open()
        if self.on_unread:
            self.unread.subscribe(self.on_unread)
        self.offers = await NewOfferNotifier(user_id, feed=self.feed).open()
        if self.on_new_offer:
            self.offers.subscribe(self.on_new_offer)
        logger.info(f"Notifications bound to user {user_id}")

    async def _teardown(self):
        if self.unread is not None:
            await self.unread.close()
            self.unread = None
        if self.offers is not None:
            await self.offers.close()
            self.offers = None

    async def close(self):
        await self._teardown()
        self.user_id = None
