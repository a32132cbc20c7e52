"""
Offer endpoints.

WHAT: Submit, accept, decline, withdraw and list offers
WHY: HTTP surface of the offer ledger
HOW: Thin handlers over offer_ledger; errors mapped by the global handlers
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ....models.api_schemas import SubmitOfferRequest
from ....models.marketplace import AcceptOfferResult, ListingOffers, OfferView
from ....services.offer_ledger import offer_ledger
from ....utils.logger import get_logger
from ...deps import get_current_user_id

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/listings/{listing_id}/offers",
    response_model=OfferView,
    status_code=status.HTTP_201_CREATED
)
async def submit_offer(
    listing_id: str,
    request: SubmitOfferRequest,
    user_id: str = Depends(get_current_user_id)
):
    """
    Make an offer on a listing.

    Raises:
        ValidationError: self-offer, amount out of range, duplicate pending offer
        NotFoundError: listing missing
    """
    return await offer_ledger.submit_offer(listing_id, user_id, request.amount, request.message)


@router.get("/listings/{listing_id}/offers", response_model=ListingOffers)
async def list_listing_offers(listing_id: str, user_id: str = Depends(get_current_user_id)):
    """Owner's offer panel: pending offers and history."""
    return await offer_ledger.list_offers_for_listing(listing_id, user_id)


@router.get("/offers/mine", response_model=List[OfferView])
async def list_my_offers(
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: str = Depends(get_current_user_id)
):
    """Offers the caller has made, optionally filtered by status."""
    return await offer_ledger.list_offers_by_buyer(user_id, status_filter)


@router.post("/offers/{offer_id}/accept", response_model=AcceptOfferResult)
async def accept_offer(offer_id: str, user_id: str = Depends(get_current_user_id)):
    """
    Accept an offer as the listing owner.

    A 500 with error PARTIAL_WORKFLOW_FAILURE means the offer is accepted but
    follow-up steps failed; POST /offers/{offer_id}/accept/resume finishes them.
    """
    return await offer_ledger.accept_offer(offer_id, user_id)


@router.post("/offers/{offer_id}/accept/resume", response_model=AcceptOfferResult)
async def resume_accept(offer_id: str, user_id: str = Depends(get_current_user_id)):
    """Finish a partially applied acceptance."""
    return await offer_ledger.resume_accept(offer_id, user_id)


@router.post("/offers/{offer_id}/decline", response_model=OfferView)
async def decline_offer(offer_id: str, user_id: str = Depends(get_current_user_id)):
    return await offer_ledger.decline_offer(offer_id, user_id)


@router.post("/offers/{offer_id}/withdraw", response_model=OfferView)
async def withdraw_offer(offer_id: str, user_id: str = Depends(get_current_user_id)):
    return await offer_ledger.withdraw_offer(offer_id, user_id)
