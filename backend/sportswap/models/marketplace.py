"""
Marketplace view models.

WHAT: Joined, read-side shapes handed to the UI layer (offers, conversations, messages)
WHY: Views combine several store records; callers should not touch ORM rows
HOW: Pydantic v2 models built from ORM rows via from_attributes
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProfileSummary(BaseModel):
    """Username and avatar of a user."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    profile_picture_url: Optional[str] = None
    missing: bool = False

    @classmethod
    def placeholder(cls, user_id: str) -> "ProfileSummary":
        """Stand-in for a profile that no longer exists."""
        return cls(id=user_id, username="unknown user", missing=True)


class ListingSnapshot(BaseModel):
    """The listing fields shown next to offers and conversations."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    title: str
    price: float
    status: str
    cover_image_url: Optional[str] = None


class OfferView(BaseModel):
    """An offer, optionally joined with its buyer, listing and seller."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    buyer_id: str
    amount: float
    message: Optional[str] = None
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    buyer: Optional[ProfileSummary] = None
    seller: Optional[ProfileSummary] = None
    listing: Optional[ListingSnapshot] = None
    percent_of_asking: Optional[int] = None


class ListingOffers(BaseModel):
    """Owner's offer panel for one listing."""
    listing: ListingSnapshot
    pending: list[OfferView] = Field(default_factory=list)
    history: list[OfferView] = Field(default_factory=list)


class TransactionView(BaseModel):
    """Binding record of an accepted offer."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: Optional[str] = None
    buyer_id: str
    seller_id: str
    offer_id: Optional[str] = None
    final_price: float
    status: str
    created_at: datetime


class AcceptOfferResult(BaseModel):
    """Outcome of a fully completed accept-offer workflow."""
    offer: OfferView
    transaction: TransactionView
    listing: ListingSnapshot
    declined_offer_ids: list[str] = Field(default_factory=list)


class MessageView(BaseModel):
    """A chat message; `pending` marks an optimistic, not yet persisted one."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    read_at: Optional[datetime] = None
    sender: Optional[ProfileSummary] = None
    pending: bool = False


class ConversationView(BaseModel):
    """A bare conversation record."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: Optional[str] = None
    buyer_id: str
    seller_id: str
    created_at: datetime
    last_message_at: datetime


class ConversationSummary(ConversationView):
    """Inbox row: conversation joined with counterpart, listing and latest message."""
    counterpart: ProfileSummary
    listing: Optional[ListingSnapshot] = None
    last_message: Optional[MessageView] = None
    unread_count: int = 0
    role: Literal["buyer", "seller"]


class NewOfferNotification(BaseModel):
    """Edge-triggered signal: somebody made an offer on one of my listings."""
    offer_id: str
    listing_id: str
    listing_title: str
    buyer_id: str
    amount: float
    created_at: datetime
