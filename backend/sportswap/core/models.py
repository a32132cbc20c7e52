"""
ORM models for marketplace persistence.

WHAT: SQLAlchemy models for profiles, listings, offers, transactions, conversations, messages
WHY: The store is the single source of truth every local view reconciles against
HOW: Declarative models with check/unique constraints, partial indexes and relationships
"""

import enum
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum, text
)
from sqlalchemy.orm import relationship

from .database import Base
from ..utils.clock import utcnow


def _new_id() -> str:
    return str(uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _status_column(enum_cls, default):
    return Column(
        SQLEnum(enum_cls, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=default
    )


class ListingStatus(str, enum.Enum):
    """Listing status values."""
    DRAFT = "draft"
    ACTIVE = "active"
    SOLD = "sold"


class OfferStatus(str, enum.Enum):
    """Offer status values. COUNTERED is reserved and never entered."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COUNTERED = "countered"
    WITHDRAWN = "withdrawn"


class TransactionStatus(str, enum.Enum):
    """Transaction status values."""
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SerializableMixin:
    """Row -> plain dict, enum members flattened to their values."""

    def to_dict(self) -> dict:
        row = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, enum.Enum):
                value = value.value
            row[column.key] = value
        return row


class Profile(SerializableMixin, Base):
    """
    Profile table - public identity of a marketplace user.

    WHAT: Username and avatar shown next to offers and messages
    WHY: Views resolve senders/buyers/counterparts against it
    HOW: Primary key is the stable user id from the auth provider
    """
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_new_id)
    username = Column(String(50), unique=True, nullable=False)
    profile_picture_url = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Profile(id={self.id}, username={self.username})>"


class Listing(SerializableMixin, Base):
    """
    Listing table - an item for sale.

    WHAT: Owner, asking price and lifecycle status
    WHY: Offers are validated against it; accepting an offer marks it sold
    HOW: Price CHECK constraint, status index for browse queries
    """
    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(200), nullable=False)
    price = Column(Float, nullable=False)
    status = _status_column(ListingStatus, ListingStatus.ACTIVE)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("price > 0", name="check_listing_price_positive"),
        Index("idx_listing_owner", "owner_id"),
        Index("idx_listing_status", "status"),
    )

    images = relationship(
        "ListingImage",
        back_populates="listing",
        cascade="all, delete-orphan",
        order_by="ListingImage.display_order"
    )
    offers = relationship("Offer", back_populates="listing", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Listing(id={self.id}, title={self.title}, price={self.price}, status={self.status})>"


class ListingImage(SerializableMixin, Base):
    """
    ListingImage table - uploaded image URLs for a listing.

    WHAT: Opaque image URLs produced by the upload flow
    WHY: The lowest display_order image is the listing's cover
    HOW: Foreign key to Listing with CASCADE delete
    """
    __tablename__ = "listing_images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(String(36), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    image_url = Column(Text, nullable=False)
    display_order = Column(Integer, nullable=False, default=0)

    listing = relationship("Listing", back_populates="images")

    def __repr__(self):
        return f"<ListingImage(listing={self.listing_id}, order={self.display_order})>"


class Offer(SerializableMixin, Base):
    """
    Offer table - a buyer's proposed price against a listing.

    WHAT: Amount, optional note and lifecycle status
    WHY: Negotiation state; accepting one closes out the listing
    HOW: Amount CHECK; partial unique indexes so a buyer holds one pending offer per listing
         and a listing holds at most one accepted offer
    """
    __tablename__ = "offers"

    id = Column(String(36), primary_key=True, default=_new_id)
    listing_id = Column(String(36), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    buyer_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Float, nullable=False)
    message = Column(Text, nullable=True)
    status = _status_column(OfferStatus, OfferStatus.PENDING)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="check_offer_amount_positive"),
        Index(
            "uq_offer_pending_per_buyer",
            "listing_id", "buyer_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index(
            "uq_offer_accepted_per_listing",
            "listing_id",
            unique=True,
            sqlite_where=text("status = 'accepted'"),
            postgresql_where=text("status = 'accepted'"),
        ),
        Index("idx_offer_listing_status", "listing_id", "status"),
        Index("idx_offer_buyer", "buyer_id"),
    )

    listing = relationship("Listing", back_populates="offers")

    def __repr__(self):
        return f"<Offer(id={self.id}, amount={self.amount}, status={self.status})>"


class Transaction(SerializableMixin, Base):
    """
    Transaction table - the binding record of an accepted offer.

    WHAT: Buyer, seller, final price for a closed negotiation
    WHY: Durable proof a deal was struck (payment/shipping are out of scope)
    HOW: UNIQUE offer_id so an accepted offer yields exactly one transaction
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    listing_id = Column(String(36), ForeignKey("listings.id", ondelete="SET NULL"), nullable=True)
    buyer_id = Column(String(36), nullable=False)
    seller_id = Column(String(36), nullable=False)
    offer_id = Column(String(36), ForeignKey("offers.id", ondelete="SET NULL"), unique=True, nullable=True)
    final_price = Column(Float, nullable=False)
    status = _status_column(TransactionStatus, TransactionStatus.PENDING)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("final_price > 0", name="check_transaction_price_positive"),
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, offer={self.offer_id}, price={self.final_price})>"


class Conversation(SerializableMixin, Base):
    """
    Conversation table - a thread between one buyer and one seller about a listing.

    WHAT: Participants, listing and last activity timestamp
    WHY: Groups messages; the inbox sorts by last_message_at
    HOW: UNIQUE (listing, buyer, seller); listing_id nulled when the listing goes away
    """
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_new_id)
    listing_id = Column(String(36), ForeignKey("listings.id", ondelete="SET NULL"), nullable=True)
    buyer_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    seller_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_message_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("listing_id", "buyer_id", "seller_id", name="unique_conversation_triple"),
        CheckConstraint("buyer_id <> seller_id", name="check_conversation_distinct_parties"),
        Index("idx_conversation_buyer", "buyer_id"),
        Index("idx_conversation_seller", "seller_id"),
    )

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at"
    )

    def participant_ids(self) -> tuple:
        return (self.buyer_id, self.seller_id)

    def counterpart_of(self, user_id: str) -> str:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id

    def __repr__(self):
        return f"<Conversation(id={self.id}, listing={self.listing_id})>"


class Message(SerializableMixin, Base):
    """
    Message table - one chat message in a conversation.

    WHAT: Sender, immutable content, read receipt
    WHY: Message history and unread counts
    HOW: read_at is the only column mutated after insert (by the recipient)
    """
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=_new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_message_conversation_created", "conversation_id", "created_at"),
        Index("idx_message_unread", "conversation_id", "read_at"),
    )

    conversation = relationship("Conversation", back_populates="messages")

    def __repr__(self):
        return f"<Message(id={self.id}, sender={self.sender_id}, read={self.read_at is not None})>"
