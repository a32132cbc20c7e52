"""
Offer ledger.

WHAT: Offer lifecycle against a listing: submit, accept, decline, withdraw, and offer views
WHY: Central place that enforces offer policy and the pending -> terminal state machine
HOW: Validate against store state inside one store session per single-step transition;
     delegate acceptance to the ordered AcceptOfferWorkflow
"""

import math
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError

from ..core.config import settings
from ..core.database import store_session
from ..core.models import Listing, ListingStatus, Offer, OfferStatus
from ..models.marketplace import AcceptOfferResult, ListingOffers, OfferView
from ..utils.exceptions import AuthorizationError, NotFoundError, ValidationError
from ..utils.logger import get_logger
from .accept_workflow import AcceptOfferWorkflow, AcceptStep
from .lookups import (
    fetch_cover_images,
    fetch_listing_snapshots,
    fetch_profiles,
    listing_snapshot,
    offer_view,
)

logger = get_logger(__name__)


def parse_offer_amount(amount: Any) -> float:
    """
    Coerce a user-supplied amount to a positive finite float.

    Raises:
        ValidationError: not a number, not finite, or not positive
    """
    if isinstance(amount, bool) or amount is None:
        raise ValidationError("Please enter a valid offer amount", field="amount", code="INVALID_AMOUNT")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Please enter a valid offer amount", field="amount", code="INVALID_AMOUNT")
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Please enter a valid offer amount", field="amount", code="INVALID_AMOUNT")
    return value


def normalize_offer_message(message: Optional[str]) -> Optional[str]:
    """Trim the optional note; blank becomes None."""
    if message is None:
        return None
    note = message.strip()
    if not note:
        return None
    if len(note) > settings.OFFER_MESSAGE_MAX_LENGTH:
        raise ValidationError(
            f"Offer message cannot exceed {settings.OFFER_MESSAGE_MAX_LENGTH} characters",
            field="message",
            code="MESSAGE_TOO_LONG"
        )
    return note


def suggest_offer_amount(price: float) -> float:
    """Suggested opening offer: the asking price less the configured discount, whole units."""
    return float(round(price * (1 - settings.OFFER_SUGGESTED_DISCOUNT)))


class OfferLedger:
    """
    Owner of the offer state machine.

    pending --accept-->   accepted   (listing owner)
    pending --decline-->  declined   (listing owner, or cascade on sibling accept)
    pending --withdraw--> withdrawn  (buyer)
    """

    async def submit_offer(
        self,
        listing_id: str,
        buyer_id: str,
        amount: Any,
        message: Optional[str] = None,
    ) -> OfferView:
        """
        Create a pending offer.

        Raises:
            NotFoundError: listing missing
            ValidationError: self-offer, bad amount, above asking, duplicate pending, long note
        """
        note = normalize_offer_message(message)

        try:
            with store_session("submit offer") as db:
                listing = db.get(Listing, listing_id)
                if listing is None:
                    raise NotFoundError("listing", listing_id)

                if listing.owner_id == buyer_id:
                    raise ValidationError(
                        "You cannot make an offer on your own listing",
                        field="buyer_id",
                        code="SELF_OFFER_FORBIDDEN"
                    )

                value = parse_offer_amount(amount)
                if value > listing.price:
                    raise ValidationError(
                        "Offer cannot exceed the asking price",
                        field="amount",
                        code="OFFER_EXCEEDS_ASKING_PRICE"
                    )

                if listing.status == ListingStatus.SOLD:
                    raise ValidationError(
                        "This listing is no longer accepting offers",
                        field="listing_id",
                        code="LISTING_NOT_AVAILABLE"
                    )

                existing = (
                    db.query(Offer.id)
                    .filter_by(listing_id=listing_id, buyer_id=buyer_id, status=OfferStatus.PENDING)
                    .first()
                )
                if existing is not None:
                    raise ValidationError(
                        "You already have a pending offer for this listing",
                        field="listing_id",
                        code="DUPLICATE_PENDING_OFFER"
                    )

                offer = Offer(
                    listing_id=listing_id,
                    buyer_id=buyer_id,
                    amount=value,
                    message=note,
                    status=OfferStatus.PENDING
                )
                db.add(offer)
                db.flush()
                view = offer_view(offer)
        except IntegrityError as e:
            # the partial unique index caught a concurrent submit
            logger.warning(f"Offer insert rejected for listing {listing_id} by buyer {buyer_id}: {e.orig}")
            raise ValidationError(
                "You already have a pending offer for this listing",
                field="listing_id",
                code="DUPLICATE_PENDING_OFFER"
            )

        logger.info(f"Offer {view.id} submitted on listing {listing_id}: {view.amount:.2f}")
        return view

    async def accept_offer(self, offer_id: str, actor_id: str) -> AcceptOfferResult:
        """
        Accept a pending offer as the listing owner.

        WHAT: Offer accepted, transaction created, listing sold, competitors declined
        WHY: Closing a negotiation touches four records that must end up consistent
        HOW: Authorize, then run AcceptOfferWorkflow (see its module for failure semantics)

        Raises:
            AuthorizationError: actor does not own the listing
            ValidationError: offer not pending / listing already sold
            PartialWorkflowFailure: accepted, but a follow-up step failed
        """
        offer_snapshot, listing_id = self._load_for_owner(offer_id, actor_id, "accept this offer")
        if offer_snapshot.status != OfferStatus.PENDING.value:
            raise ValidationError(
                f"Offer is {offer_snapshot.status}, only pending offers can be accepted",
                field="status",
                code="OFFER_NOT_PENDING"
            )

        workflow = AcceptOfferWorkflow(offer_id, listing_id)
        await workflow.run()
        logger.info(f"Offer {offer_id} accepted, listing {listing_id} sold")
        return workflow.result()

    async def resume_accept(self, offer_id: str, actor_id: str) -> AcceptOfferResult:
        """Finish an acceptance that stopped after the offer was marked accepted."""
        self._load_for_owner(offer_id, actor_id, "resume accepting this offer")

        workflow = AcceptOfferWorkflow.from_store(offer_id)
        if AcceptStep.OFFER_ACCEPTED not in workflow.completed:
            raise ValidationError(
                "Offer was never accepted; nothing to resume",
                field="status",
                code="OFFER_NOT_ACCEPTED"
            )
        await workflow.resume()
        return workflow.result()

    async def decline_offer(self, offer_id: str, actor_id: str) -> OfferView:
        """Decline a pending offer as the listing owner."""
        return self._transition(offer_id, actor_id, OfferStatus.DECLINED)

    async def withdraw_offer(self, offer_id: str, actor_id: str) -> OfferView:
        """Withdraw a pending offer as its buyer."""
        return self._transition(offer_id, actor_id, OfferStatus.WITHDRAWN)

    def _load_for_owner(self, offer_id: str, actor_id: str, action: str):
        with store_session("load offer") as db:
            offer = db.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError("offer", offer_id)
            listing = db.get(Listing, offer.listing_id)
            if listing is None:
                raise NotFoundError("listing", offer.listing_id)
            if listing.owner_id != actor_id:
                raise AuthorizationError(action, actor_id, offer_id)
            return offer_view(offer), listing.id

    def _transition(self, offer_id: str, actor_id: str, target: OfferStatus) -> OfferView:
        verb = "decline" if target == OfferStatus.DECLINED else "withdraw"

        with store_session(f"{verb} offer") as db:
            offer = db.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError("offer", offer_id)

            if target == OfferStatus.DECLINED:
                listing = db.get(Listing, offer.listing_id)
                if listing is None:
                    raise NotFoundError("listing", offer.listing_id)
                allowed = listing.owner_id == actor_id
            else:
                allowed = offer.buyer_id == actor_id
            if not allowed:
                raise AuthorizationError(f"{verb} this offer", actor_id, offer_id)

            if offer.status != OfferStatus.PENDING:
                raise ValidationError(
                    f"Offer is {offer.status.value}, only pending offers can be {target.value}",
                    field="status",
                    code="OFFER_NOT_PENDING"
                )

            offer.status = target
            db.flush()
            view = offer_view(offer)

        logger.info(f"Offer {offer_id} {target.value} by {actor_id}")
        return view

    # ========== Offer views ==========

    async def list_offers_for_listing(self, listing_id: str, owner_id: str) -> ListingOffers:
        """
        Owner's offer panel: newest first, joined with buyer profiles.

        Raises:
            NotFoundError: listing missing
            AuthorizationError: caller does not own the listing
        """
        with store_session("list listing offers") as db:
            listing = db.get(Listing, listing_id)
            if listing is None:
                raise NotFoundError("listing", listing_id)
            if listing.owner_id != owner_id:
                raise AuthorizationError("view offers on this listing", owner_id, listing_id)

            offers = (
                db.query(Offer)
                .filter(Offer.listing_id == listing_id)
                .order_by(Offer.created_at.desc())
                .all()
            )
            buyers = fetch_profiles(db, (offer.buyer_id for offer in offers))
            covers = fetch_cover_images(db, [listing.id])
            snapshot = listing_snapshot(listing, covers.get(listing.id))

            views = [
                offer_view(
                    offer,
                    buyer=buyers.get(offer.buyer_id),
                    percent_of_asking=round(offer.amount / listing.price * 100),
                )
                for offer in offers
            ]

        return ListingOffers(
            listing=snapshot,
            pending=[view for view in views if view.status == OfferStatus.PENDING.value],
            history=[view for view in views if view.status != OfferStatus.PENDING.value],
        )

    async def list_offers_by_buyer(self, buyer_id: str, status: Optional[str] = None) -> List[OfferView]:
        """A buyer's offers, newest first, joined with listing and seller."""
        query_status = None
        if status is not None:
            try:
                query_status = OfferStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown offer status: {status}", field="status")

        with store_session("list buyer offers") as db:
            query = db.query(Offer).filter(Offer.buyer_id == buyer_id)
            if query_status is not None:
                query = query.filter(Offer.status == query_status)
            offers = query.order_by(Offer.created_at.desc()).all()

            listings = fetch_listing_snapshots(db, (offer.listing_id for offer in offers))
            sellers = fetch_profiles(db, (listing.owner_id for listing in listings.values()))

            views = []
            for offer in offers:
                listing = listings.get(offer.listing_id)
                views.append(offer_view(
                    offer,
                    listing=listing,
                    seller=sellers.get(listing.owner_id) if listing else None,
                    percent_of_asking=round(offer.amount / listing.price * 100) if listing else None,
                ))
        return views


offer_ledger = OfferLedger()
