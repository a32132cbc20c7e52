"""
Integration tests for account notifications.

WHAT: Test the unread badge, new-offer events and binding to the signed-in user
WHY: Badges must follow writes from any device and never leak a signed-out user's channels
HOW: Real store and change feed, callbacks recording every emitted value
"""

import pytest

from sportswap.core.feed import change_feed
from sportswap.services import message_channel
from sportswap.services.conversation_directory import list_conversations
from sportswap.services.message_channel import MessageChannel
from sportswap.services.notification_counter import (
    AccountNotifications,
    count_unread_messages,
    subscribe_new_offer_notifications,
    subscribe_unread_count,
)
from sportswap.services.offer_ledger import offer_ledger
from tests.fixtures.marketplace import create_conversation, create_listing, create_message


def _channel_names():
    return sorted(c.name for c in change_feed.active_channels)


@pytest.mark.integration
class TestUnreadCount:

    @pytest.mark.asyncio
    async def test_counts_across_conversations(self, conversation_id, listing_id, seller_id, buyer_id):
        helmet = create_listing(seller_id, title="Helmet", price=40)
        other_thread = create_conversation(helmet, buyer_id, seller_id)
        create_message(conversation_id, seller_id, "one")
        create_message(other_thread, seller_id, "two")
        create_message(other_thread, buyer_id, "mine")
        create_message(conversation_id, seller_id, "seen", read=True)

        assert await count_unread_messages(buyer_id) == 2
        assert await count_unread_messages(seller_id) == 1

    @pytest.mark.asyncio
    async def test_opening_conversation_drops_badge_by_two(self, conversation_id, buyer_id, seller_id):
        create_message(conversation_id, seller_id, "Hi", seconds_ago=20)
        create_message(conversation_id, seller_id, "Still interested?", seconds_ago=10)

        values = []
        counter = await subscribe_unread_count(buyer_id, values.append)
        assert values == [2]

        async with MessageChannel(conversation_id, buyer_id):
            await change_feed.drain()

        [summary] = await list_conversations(buyer_id)
        assert summary.unread_count == 0
        assert values == [2, 0]
        await counter.close()

    @pytest.mark.asyncio
    async def test_new_message_raises_badge(self, conversation_id, buyer_id, seller_id):
        values = []
        counter = await subscribe_unread_count(buyer_id, values.append)

        await message_channel.send_message(conversation_id, seller_id, "Offer accepted?")
        await change_feed.drain()

        assert values == [0, 1]
        # own messages never count
        await message_channel.send_message(conversation_id, buyer_id, "Yes!")
        await change_feed.drain()
        assert values == [0, 1]
        await counter.close()

    @pytest.mark.asyncio
    async def test_close_stops_updates(self, conversation_id, buyer_id, seller_id):
        values = []
        counter = await subscribe_unread_count(buyer_id, values.append)
        await counter.close()

        await message_channel.send_message(conversation_id, seller_id, "hello?")
        await change_feed.drain()

        assert values == [0]
        assert change_feed.active_channels == []


@pytest.mark.integration
class TestNewOfferNotifications:

    @pytest.mark.asyncio
    async def test_owner_notified_once(self, listing_id, seller_id, buyer_id):
        received = []
        notifier = await subscribe_new_offer_notifications(seller_id, received.append)

        offer = await offer_ledger.submit_offer(listing_id, buyer_id, 80, "Can you do 80?")
        await offer_ledger.decline_offer(offer.id, seller_id)
        await change_feed.drain()

        assert len(received) == 1
        notification = received[0]
        assert notification.offer_id == offer.id
        assert notification.listing_title == "Carbon road bike"
        assert notification.buyer_id == buyer_id
        assert notification.amount == 80.0
        await notifier.close()

    @pytest.mark.asyncio
    async def test_other_users_not_notified(self, listing_id, buyer_id, other_buyer_id):
        received = []
        notifier = await subscribe_new_offer_notifications(other_buyer_id, received.append)

        await offer_ledger.submit_offer(listing_id, buyer_id, 80)
        await change_feed.drain()

        assert received == []
        await notifier.close()


@pytest.mark.integration
class TestAccountNotifications:

    @pytest.mark.asyncio
    async def test_binding_follows_auth_state(self, conversation_id, listing_id, seller_id, buyer_id):
        create_message(conversation_id, seller_id, "hi")
        badges, offers = [], []
        notifications = AccountNotifications(on_unread=badges.append, on_new_offer=offers.append)

        await notifications.bind_user(buyer_id)
        assert notifications.unread_count == 1
        assert _channel_names() == [f"new-offers-{buyer_id}", f"unread-count-{buyer_id}"]

        await notifications.bind_user(seller_id)
        assert _channel_names() == [f"new-offers-{seller_id}", f"unread-count-{seller_id}"]
        assert notifications.unread_count == 0

        await offer_ledger.submit_offer(listing_id, buyer_id, 90)
        await change_feed.drain()
        assert len(offers) == 1

        await notifications.bind_user(None)
        assert change_feed.active_channels == []
        assert badges[-1] == 0
        assert notifications.unread_count == 0

    @pytest.mark.asyncio
    async def test_rebinding_same_user_is_noop(self, buyer_id):
        notifications = AccountNotifications()
        await notifications.bind_user(buyer_id)
        channels = change_feed.active_channels

        await notifications.bind_user(buyer_id)

        assert change_feed.active_channels == channels
        await notifications.close()
        assert change_feed.active_channels == []
