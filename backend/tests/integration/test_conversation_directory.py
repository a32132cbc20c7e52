"""
Integration tests for the conversation directory and inbox.

WHAT: Test inbox joins, unread counts, find-or-create, and selection across refreshes
WHY: The inbox is a cache of store state; feed-driven refreshes must not lose the open conversation
HOW: Seeded conversations/messages, the real change feed drained between steps
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from sportswap.core.database import get_db
from sportswap.core.feed import change_feed
from sportswap.core.models import Conversation
from sportswap.services import conversation_directory, message_channel
from sportswap.services.conversation_directory import (
    ConversationInbox,
    find_or_create_conversation,
    list_conversations,
)
from sportswap.utils.exceptions import NotFoundError, TransientStoreError, ValidationError
from tests.fixtures.marketplace import (
    create_conversation,
    create_listing,
    create_message,
    create_profile,
)


@pytest.fixture
def two_conversations(seller_id, buyer_id, other_buyer_id, listing_id):
    """Buyer talks to the seller about two listings; the helmet thread is newer."""
    helmet = create_listing(seller_id, title="Helmet", price=40)
    bike_thread = create_conversation(listing_id, buyer_id, seller_id)
    helmet_thread = create_conversation(helmet, buyer_id, seller_id)
    create_message(bike_thread, seller_id, "Still available", seconds_ago=120)
    create_message(helmet_thread, seller_id, "Helmet is size M", seconds_ago=30)
    return bike_thread, helmet_thread


@pytest.mark.integration
class TestListConversations:

    @pytest.mark.asyncio
    async def test_joined_rows_most_recent_first(self, two_conversations, buyer_id):
        bike_thread, helmet_thread = two_conversations

        inbox = await list_conversations(buyer_id)

        assert [c.id for c in inbox] == [helmet_thread, bike_thread]
        helmet = inbox[0]
        assert helmet.role == "buyer"
        assert helmet.counterpart.username == "sam_seller"
        assert helmet.listing.title == "Helmet"
        assert helmet.last_message.content == "Helmet is size M"
        assert helmet.unread_count == 1

        bike = inbox[1]
        assert bike.listing.cover_image_url == "https://img.example/bike-front.jpg"

    @pytest.mark.asyncio
    async def test_unread_counts_only_counterpart_messages(self, conversation_id, buyer_id, seller_id):
        create_message(conversation_id, seller_id, "Hi", seconds_ago=50)
        create_message(conversation_id, seller_id, "Are you there?", seconds_ago=40)
        create_message(conversation_id, buyer_id, "Yes", seconds_ago=30)
        create_message(conversation_id, seller_id, "Old one", seconds_ago=100, read=True)

        [summary] = await list_conversations(buyer_id)
        assert summary.unread_count == 2
        assert summary.last_message.content == "Yes"

        [seller_view] = await list_conversations(seller_id)
        assert seller_view.role == "seller"
        assert seller_view.unread_count == 1

    @pytest.mark.asyncio
    async def test_deleted_listing_leaves_conversation(self, conversation_id, buyer_id, listing_id):
        with get_db() as db:
            db.execute(
                Conversation.__table__.update()
                .where(Conversation.id == conversation_id)
                .values(listing_id=None)
            )

        [summary] = await list_conversations(buyer_id)
        assert summary.listing is None
        assert summary.listing_id is None

    @pytest.mark.asyncio
    async def test_no_conversations(self, buyer_id):
        assert await list_conversations(buyer_id) == []


@pytest.mark.integration
class TestFindOrCreateConversation:

    @pytest.mark.asyncio
    async def test_same_triple_same_conversation(self, listing_id, buyer_id, seller_id):
        first = await find_or_create_conversation(listing_id, buyer_id, seller_id)
        second = await find_or_create_conversation(listing_id, buyer_id, seller_id)

        assert first.id == second.id
        assert first.buyer_id == buyer_id
        assert first.seller_id == seller_id

    @pytest.mark.asyncio
    async def test_concurrent_calls_create_once(self, listing_id, buyer_id, seller_id):
        results = await asyncio.gather(*(
            find_or_create_conversation(listing_id, buyer_id, seller_id) for _ in range(5)
        ))

        assert len({c.id for c in results}) == 1
        with get_db() as db:
            assert db.query(Conversation).count() == 1

    @pytest.mark.asyncio
    async def test_stale_read_resolved_by_unique_triple(self, listing_id, buyer_id, seller_id):
        existing = await find_or_create_conversation(listing_id, buyer_id, seller_id)
        real_find = conversation_directory._find_conversation
        lookups = []

        def miss_first_lookup(*args):
            lookups.append(args)
            return None if len(lookups) == 1 else real_find(*args)

        with patch("sportswap.services.conversation_directory._find_conversation", side_effect=miss_first_lookup):
            again = await find_or_create_conversation(listing_id, buyer_id, seller_id)

        assert again.id == existing.id
        assert len(lookups) == 2
        with get_db() as db:
            assert db.query(Conversation).count() == 1

    @pytest.mark.asyncio
    async def test_different_buyers_get_different_conversations(self, listing_id, buyer_id,
                                                                other_buyer_id, seller_id):
        a = await find_or_create_conversation(listing_id, buyer_id, seller_id)
        b = await find_or_create_conversation(listing_id, other_buyer_id, seller_id)
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_seller_must_own_listing(self, listing_id, buyer_id, other_buyer_id):
        with pytest.raises(ValidationError) as exc_info:
            await find_or_create_conversation(listing_id, buyer_id, other_buyer_id)
        assert exc_info.value.code == "SELLER_MISMATCH"

    @pytest.mark.asyncio
    async def test_cannot_message_self(self, listing_id, seller_id):
        with pytest.raises(ValidationError) as exc_info:
            await find_or_create_conversation(listing_id, seller_id, seller_id)
        assert exc_info.value.code == "SELF_CONVERSATION_FORBIDDEN"

    @pytest.mark.asyncio
    async def test_unknown_listing(self, buyer_id, seller_id):
        with pytest.raises(NotFoundError):
            await find_or_create_conversation("gone", buyer_id, seller_id)


@pytest.mark.integration
class TestConversationInbox:

    @pytest.mark.asyncio
    async def test_initial_load_selects_most_recent(self, two_conversations, buyer_id):
        _, helmet_thread = two_conversations

        async with ConversationInbox(buyer_id) as inbox:
            assert inbox.selected_id == helmet_thread
            assert inbox.total_unread == 2

    @pytest.mark.asyncio
    async def test_deep_link_selected(self, two_conversations, buyer_id):
        bike_thread, _ = two_conversations

        async with ConversationInbox(buyer_id, requested_conversation_id=bike_thread) as inbox:
            assert inbox.selected.id == bike_thread

    @pytest.mark.asyncio
    async def test_unknown_deep_link_falls_back_to_first(self, two_conversations, buyer_id):
        _, helmet_thread = two_conversations

        async with ConversationInbox(buyer_id, requested_conversation_id="nope") as inbox:
            assert inbox.selected_id == helmet_thread

    @pytest.mark.asyncio
    async def test_refresh_keeps_manual_selection(self, two_conversations, buyer_id, seller_id):
        bike_thread, helmet_thread = two_conversations

        async with ConversationInbox(buyer_id) as inbox:
            inbox.select(bike_thread)
            # new activity reorders the list; selection must not move
            await message_channel.send_message(helmet_thread, seller_id, "Price drop!")
            await change_feed.drain()

            assert inbox.selected_id == bike_thread
            assert inbox.conversations[0].last_message.content == "Price drop!"

    @pytest.mark.asyncio
    async def test_refresh_clears_selection_when_conversation_gone(self, two_conversations, buyer_id):
        bike_thread, helmet_thread = two_conversations

        async with ConversationInbox(buyer_id) as inbox:
            inbox.select(bike_thread)
            with get_db() as db:
                db.delete(db.get(Conversation, bike_thread))
            await inbox.refresh()

            assert inbox.selected_id is None
            assert [c.id for c in inbox.conversations] == [helmet_thread]

    @pytest.mark.asyncio
    async def test_refresh_never_auto_selects(self, listing_id, buyer_id, seller_id):
        async with ConversationInbox(buyer_id) as inbox:
            assert inbox.selected_id is None

            await find_or_create_conversation(listing_id, buyer_id, seller_id)
            await change_feed.drain()

            assert len(inbox.conversations) == 1
            assert inbox.selected_id is None

    @pytest.mark.asyncio
    async def test_new_message_updates_unread(self, conversation_id, buyer_id, seller_id):
        seen = []
        async with ConversationInbox(buyer_id) as inbox:
            inbox.add_listener(lambda i: seen.append(i.total_unread))

            await message_channel.send_message(conversation_id, seller_id, "Hello there")
            await change_feed.drain()

            assert inbox.conversations[0].unread_count == 1
            assert seen[-1] == 1

    @pytest.mark.asyncio
    async def test_unrelated_conversation_ignored(self, listing_id, buyer_id, seller_id):
        stranger = create_profile("stranger")
        async with ConversationInbox(buyer_id) as inbox:
            await find_or_create_conversation(listing_id, stranger, seller_id)
            await change_feed.drain()
            assert inbox.conversations == []

    @pytest.mark.asyncio
    async def test_background_refresh_error_keeps_stale_list(self, two_conversations, buyer_id):
        async with ConversationInbox(buyer_id) as inbox:
            before = list(inbox.conversations)
            with patch(
                "sportswap.services.conversation_directory.list_conversations",
                new_callable=AsyncMock,
                side_effect=TransientStoreError("list conversations", "OperationalError")
            ):
                result = await inbox.refresh()

            assert result == before
            assert isinstance(inbox.last_error, TransientStoreError)

    @pytest.mark.asyncio
    async def test_initial_load_error_propagates(self, buyer_id):
        with patch(
            "sportswap.services.conversation_directory.list_conversations",
            new_callable=AsyncMock,
            side_effect=TransientStoreError("list conversations", "OperationalError")
        ):
            with pytest.raises(TransientStoreError):
                await ConversationInbox(buyer_id).load()

    @pytest.mark.asyncio
    async def test_select_unknown_conversation(self, two_conversations, buyer_id):
        async with ConversationInbox(buyer_id) as inbox:
            with pytest.raises(NotFoundError):
                inbox.select("not-mine")

    @pytest.mark.asyncio
    async def test_close_removes_feed_channel(self, buyer_id):
        inbox = await ConversationInbox(buyer_id).open()
        assert any(c.name == f"conversation-updates-{buyer_id}" for c in change_feed.active_channels)

        await inbox.close()
        assert not any(c.name == f"conversation-updates-{buyer_id}" for c in change_feed.active_channels)
