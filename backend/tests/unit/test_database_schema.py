"""
Unit tests for database schema validation.

WHAT: Test ORM models, constraints, and relationships
WHY: Ensure database integrity and proper constraint enforcement
HOW: Create test instances with valid/invalid data, test cascades
"""

import pytest
from sqlalchemy.exc import IntegrityError

from sportswap.core.database import SessionLocal
from sportswap.core.models import (
    Conversation, Listing, ListingStatus, Message, Offer, OfferStatus, Profile, Transaction
)


@pytest.fixture(scope="function")
def db_session():
    """
    Plain session on the per-test database.

    WHAT: Setup and teardown of one session
    WHY: Constraint violations must surface as IntegrityError here
    HOW: Tables are recreated by the autouse fixture in conftest
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def people(db_session):
    seller = Profile(username="seller")
    buyer = Profile(username="buyer")
    db_session.add_all([seller, buyer])
    db_session.commit()
    return seller, buyer


@pytest.fixture
def listing(db_session, people):
    seller, _ = people
    listing = Listing(owner_id=seller.id, title="Tennis racket", price=60.0)
    db_session.add(listing)
    db_session.commit()
    return listing


@pytest.mark.unit
class TestListingModel:

    def test_defaults(self, listing):
        assert len(listing.id) == 36
        assert listing.status == ListingStatus.ACTIVE
        assert listing.created_at is not None

    def test_price_must_be_positive(self, db_session, people):
        seller, _ = people
        db_session.add(Listing(owner_id=seller.id, title="Free stuff", price=0))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_to_dict_flattens_enums(self, listing):
        row = listing.to_dict()
        assert row["status"] == "active"
        assert row["price"] == 60.0


@pytest.mark.unit
class TestOfferModel:

    def test_one_pending_offer_per_buyer(self, db_session, people, listing):
        _, buyer = people
        db_session.add(Offer(listing_id=listing.id, buyer_id=buyer.id, amount=50))
        db_session.commit()

        db_session.add(Offer(listing_id=listing.id, buyer_id=buyer.id, amount=55))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_terminal_offers_do_not_block_new_pending(self, db_session, people, listing):
        _, buyer = people
        db_session.add(Offer(listing_id=listing.id, buyer_id=buyer.id, amount=50,
                             status=OfferStatus.WITHDRAWN))
        db_session.add(Offer(listing_id=listing.id, buyer_id=buyer.id, amount=52,
                             status=OfferStatus.DECLINED))
        db_session.add(Offer(listing_id=listing.id, buyer_id=buyer.id, amount=55))
        db_session.commit()

        assert db_session.query(Offer).count() == 3

    def test_one_accepted_offer_per_listing(self, db_session, people, listing):
        _, buyer = people
        other = Profile(username="other")
        db_session.add(other)
        db_session.add(Offer(listing_id=listing.id, buyer_id=buyer.id, amount=50, status=OfferStatus.ACCEPTED))
        db_session.commit()

        db_session.add(Offer(listing_id=listing.id, buyer_id=other.id, amount=55, status=OfferStatus.ACCEPTED))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_amount_must_be_positive(self, db_session, people, listing):
        _, buyer = people
        db_session.add(Offer(listing_id=listing.id, buyer_id=buyer.id, amount=-1))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_one_transaction_per_offer(self, db_session, people, listing):
        seller, buyer = people
        offer = Offer(listing_id=listing.id, buyer_id=buyer.id, amount=50, status=OfferStatus.ACCEPTED)
        db_session.add(offer)
        db_session.commit()

        for _ in range(2):
            db_session.add(Transaction(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id,
                                       offer_id=offer.id, final_price=50))
        with pytest.raises(IntegrityError):
            db_session.commit()


@pytest.mark.unit
class TestConversationModel:

    def test_unique_per_triple(self, db_session, people, listing):
        seller, buyer = people
        db_session.add(Conversation(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id))
        db_session.commit()

        db_session.add(Conversation(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_parties_must_differ(self, db_session, people, listing):
        seller, _ = people
        db_session.add(Conversation(listing_id=listing.id, buyer_id=seller.id, seller_id=seller.id))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_listing_delete_keeps_conversation(self, db_session, people, listing):
        seller, buyer = people
        conversation = Conversation(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id)
        db_session.add(conversation)
        db_session.commit()

        db_session.delete(listing)
        db_session.commit()
        db_session.expire_all()

        assert db_session.get(Conversation, conversation.id).listing_id is None

    def test_counterpart(self, db_session, people, listing):
        seller, buyer = people
        conversation = Conversation(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id)
        assert conversation.counterpart_of(buyer.id) == seller.id
        assert conversation.counterpart_of(seller.id) == buyer.id
        assert conversation.participant_ids() == (buyer.id, seller.id)

    def test_messages_cascade_and_order(self, db_session, people, listing):
        seller, buyer = people
        conversation = Conversation(listing_id=listing.id, buyer_id=buyer.id, seller_id=seller.id)
        db_session.add(conversation)
        db_session.flush()
        db_session.add(Message(conversation_id=conversation.id, sender_id=buyer.id, content="Hi"))
        db_session.commit()

        assert [m.content for m in conversation.messages] == ["Hi"]
        db_session.delete(conversation)
        db_session.commit()
        assert db_session.query(Message).count() == 0
