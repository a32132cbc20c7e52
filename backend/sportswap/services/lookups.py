"""
Batch lookups and row-to-view conversion shared by the services.

WHAT: Resolve profiles and listing snapshots for a set of ids in one query each
WHY: Views join many rows against few profiles/listings; one lookup per row is wasteful
HOW: IN (...) queries keyed by the distinct ids, placeholders for missing rows
"""

from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session as DBSession

from ..core.models import Listing, ListingImage, Message, Offer, Profile, Transaction, Conversation
from ..models.marketplace import (
    ConversationView,
    ListingSnapshot,
    MessageView,
    OfferView,
    ProfileSummary,
    TransactionView,
)


def fetch_profiles(db: DBSession, user_ids: Iterable[str]) -> Dict[str, ProfileSummary]:
    """
    Resolve profiles for the distinct ids given.

    Missing profiles map to a placeholder so views never break on deleted users.
    """
    ids = {user_id for user_id in user_ids if user_id}
    if not ids:
        return {}

    rows = db.query(Profile).filter(Profile.id.in_(ids)).all()
    profiles = {row.id: ProfileSummary.model_validate(row.to_dict()) for row in rows}
    for user_id in ids - profiles.keys():
        profiles[user_id] = ProfileSummary.placeholder(user_id)
    return profiles


def fetch_profile(db: DBSession, user_id: str) -> ProfileSummary:
    row = db.get(Profile, user_id)
    if row is None:
        return ProfileSummary.placeholder(user_id)
    return ProfileSummary.model_validate(row.to_dict())


def fetch_cover_images(db: DBSession, listing_ids: Iterable[str]) -> Dict[str, str]:
    """Cover image (lowest display_order) per listing."""
    ids = {listing_id for listing_id in listing_ids if listing_id}
    if not ids:
        return {}

    covers: Dict[str, str] = {}
    images = (
        db.query(ListingImage)
        .filter(ListingImage.listing_id.in_(ids))
        .order_by(ListingImage.display_order, ListingImage.id)
        .all()
    )
    for image in images:
        covers.setdefault(image.listing_id, image.image_url)
    return covers


def listing_snapshot(listing: Listing, cover_image_url: Optional[str] = None) -> ListingSnapshot:
    return ListingSnapshot(**{
        key: value for key, value in listing.to_dict().items()
        if key in ListingSnapshot.model_fields
    }, cover_image_url=cover_image_url)


def fetch_listing_snapshots(db: DBSession, listing_ids: Iterable[str]) -> Dict[str, ListingSnapshot]:
    """Listing snapshots with cover images. Deleted listings are simply absent."""
    ids = {listing_id for listing_id in listing_ids if listing_id}
    if not ids:
        return {}

    listings = db.query(Listing).filter(Listing.id.in_(ids)).all()
    covers = fetch_cover_images(db, ids)
    return {listing.id: listing_snapshot(listing, covers.get(listing.id)) for listing in listings}


def offer_view(offer: Offer, **extra) -> OfferView:
    return OfferView(**offer.to_dict(), **extra)


def transaction_view(transaction: Transaction) -> TransactionView:
    return TransactionView(**transaction.to_dict())


def conversation_view(conversation: Conversation) -> ConversationView:
    return ConversationView(**conversation.to_dict())


def message_view(message: Message, sender: Optional[ProfileSummary] = None) -> MessageView:
    return MessageView(**message.to_dict(), sender=sender)


def message_view_from_row(row: dict, sender: Optional[ProfileSummary] = None) -> MessageView:
    """Build a view from a change-feed row snapshot."""
    fields = {key: value for key, value in row.items() if key in MessageView.model_fields}
    return MessageView(**fields, sender=sender)
