"""
Accept-offer workflow.

WHAT: The ordered multi-record write that closes a negotiation
WHY: The store has no transaction spanning these writes; partial application must be
     detectable and resumable instead of hidden in a chain of unguarded calls
HOW: Each step is its own store transaction; the workflow records the furthest completed
     step, keeps going after a failed step, and can be rebuilt from store state to resume
"""

import enum
from typing import Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..core.database import record_update, store_session
from ..core.models import Listing, ListingStatus, Offer, OfferStatus, Transaction, TransactionStatus
from ..models.marketplace import AcceptOfferResult
from ..utils.clock import utcnow
from ..utils.exceptions import (
    NotFoundError,
    PartialWorkflowFailure,
    ValidationError,
)
from ..utils.logger import get_logger
from .lookups import fetch_cover_images, listing_snapshot, offer_view, transaction_view

logger = get_logger(__name__)


def _listing_already_sold() -> ValidationError:
    return ValidationError(
        "Listing already has an accepted offer",
        field="listing_id",
        code="LISTING_ALREADY_SOLD"
    )


class AcceptStep(int, enum.Enum):
    """Workflow steps, in execution order."""
    OFFER_ACCEPTED = 1
    TRANSACTION_CREATED = 2
    LISTING_SOLD = 3
    SIBLINGS_DECLINED = 4


class AcceptOfferWorkflow:
    """
    Accept one offer and close out its listing.

    Steps:
        1. offer -> accepted (state-defining, conditional on still being pending)
        2. create the Transaction at the offer amount (idempotent per offer)
        3. listing -> sold
        4. every other pending offer on the listing -> declined
    """

    def __init__(self, offer_id: str, listing_id: str):
        self.offer_id = offer_id
        self.listing_id = listing_id
        self.completed: List[AcceptStep] = []
        self.errors: Dict[AcceptStep, Exception] = {}
        self.transaction_id: Optional[str] = None
        self.declined_offer_ids: List[str] = []

    @property
    def furthest_step(self) -> Optional[AcceptStep]:
        return max(self.completed) if self.completed else None

    @property
    def failed_steps(self) -> List[AcceptStep]:
        return sorted(self.errors)

    @property
    def is_complete(self) -> bool:
        return len(self.completed) == len(AcceptStep)

    def _mark_done(self, step: AcceptStep):
        if step not in self.completed:
            self.completed.append(step)
            self.completed.sort()
        self.errors.pop(step, None)
        logger.info(f"Accept offer {self.offer_id}: step {step.name} done")

    # ========== Steps ==========

    def _check_acceptable(self, db, offer: Offer):
        """Reject early with a precise code; the conditional update below is what enforces it."""
        if offer.status != OfferStatus.PENDING:
            raise ValidationError(
                f"Offer is {offer.status.value}, only pending offers can be accepted",
                field="status",
                code="OFFER_NOT_PENDING"
            )
        listing = db.get(Listing, self.listing_id)
        if listing is None:
            raise NotFoundError("listing", self.listing_id)
        already_accepted = (
            db.query(Offer.id)
            .filter(Offer.listing_id == listing.id, Offer.status == OfferStatus.ACCEPTED)
            .first()
        )
        if listing.status == ListingStatus.SOLD or already_accepted is not None:
            raise _listing_already_sold()

    def _accept_offer(self):
        try:
            with store_session("accept offer") as db:
                offer = db.get(Offer, self.offer_id)
                if offer is None:
                    raise NotFoundError("offer", self.offer_id)
                self._check_acceptable(db, offer)
                before = offer.to_dict()

                # only wins while the offer is still pending; the accepted-per-listing
                # index rejects a concurrent accept of a sibling
                result = db.execute(
                    update(Offer)
                    .where(Offer.id == self.offer_id, Offer.status == OfferStatus.PENDING)
                    .values(status=OfferStatus.ACCEPTED, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ValidationError(
                        "Offer is no longer pending",
                        field="status",
                        code="OFFER_NOT_PENDING"
                    )
                db.refresh(offer)
                record_update(db, Offer.__tablename__, new=offer.to_dict(), old=before)
        except IntegrityError as e:
            logger.warning(f"Accept offer {self.offer_id}: lost race for listing {self.listing_id}")
            raise _listing_already_sold() from e

    def _create_transaction(self):
        try:
            with store_session("create transaction") as db:
                existing = db.query(Transaction).filter_by(offer_id=self.offer_id).first()
                if existing is not None:
                    self.transaction_id = existing.id
                    return

                offer = db.get(Offer, self.offer_id)
                listing = db.get(Listing, self.listing_id)
                if offer is None or listing is None:
                    raise NotFoundError("offer" if offer is None else "listing",
                                        self.offer_id if offer is None else self.listing_id)

                transaction = Transaction(
                    listing_id=listing.id,
                    buyer_id=offer.buyer_id,
                    seller_id=listing.owner_id,
                    offer_id=offer.id,
                    final_price=offer.amount,
                    status=TransactionStatus.PENDING
                )
                db.add(transaction)
                db.flush()
                self.transaction_id = transaction.id
        except IntegrityError:
            # a concurrent resume already created it
            with store_session("read transaction") as db:
                existing = db.query(Transaction).filter_by(offer_id=self.offer_id).first()
                if existing is None:
                    raise
                self.transaction_id = existing.id

    def _mark_listing_sold(self):
        with store_session("mark listing sold") as db:
            listing = db.get(Listing, self.listing_id)
            if listing is None:
                raise NotFoundError("listing", self.listing_id)
            if listing.status != ListingStatus.SOLD:
                listing.status = ListingStatus.SOLD

    def _decline_siblings(self):
        with store_session("decline competing offers") as db:
            siblings = (
                db.query(Offer)
                .filter(
                    Offer.listing_id == self.listing_id,
                    Offer.status == OfferStatus.PENDING,
                    Offer.id != self.offer_id,
                )
                .all()
            )
            for sibling in siblings:
                sibling.status = OfferStatus.DECLINED
            declined = [sibling.id for sibling in siblings]
        self.declined_offer_ids.extend(d for d in declined if d not in self.declined_offer_ids)
        if declined:
            logger.info(f"Accept offer {self.offer_id}: cascade-declined {len(declined)} offers")

    _STEP_METHODS = {
        AcceptStep.TRANSACTION_CREATED: "_create_transaction",
        AcceptStep.LISTING_SOLD: "_mark_listing_sold",
        AcceptStep.SIBLINGS_DECLINED: "_decline_siblings",
    }

    # ========== Execution ==========

    async def run(self) -> "AcceptOfferWorkflow":
        """
        Execute the workflow from the start.

        Raises:
            ValidationError / NotFoundError / TransientStoreError: step 1 failed, nothing applied
            PartialWorkflowFailure: step 1 committed but a later step failed
        """
        self._accept_offer()
        self._mark_done(AcceptStep.OFFER_ACCEPTED)
        return await self._run_remaining()

    async def resume(self) -> "AcceptOfferWorkflow":
        """Re-run every step after the first that is not done yet."""
        if AcceptStep.OFFER_ACCEPTED not in self.completed:
            raise ValidationError(
                "Offer was never accepted; nothing to resume",
                field="status",
                code="OFFER_NOT_ACCEPTED"
            )
        return await self._run_remaining()

    async def _run_remaining(self) -> "AcceptOfferWorkflow":
        for step, method_name in self._STEP_METHODS.items():
            if step in self.completed:
                continue
            try:
                getattr(self, method_name)()
            except Exception as e:
                # keep going: later steps do not depend on earlier ones succeeding;
                # every failure here is reported through PartialWorkflowFailure
                self.errors[step] = e
                logger.error(f"Accept offer {self.offer_id}: step {step.name} failed: {e}")
                continue
            self._mark_done(step)

        if self.errors:
            raise PartialWorkflowFailure(
                offer_id=self.offer_id,
                completed_steps=[step.name.lower() for step in self.completed],
                failed_steps=[step.name.lower() for step in self.failed_steps],
                workflow=self,
            )
        return self

    @classmethod
    def from_store(cls, offer_id: str) -> "AcceptOfferWorkflow":
        """
        Rebuild workflow progress from what the store shows for an offer.

        WHAT: Diagnose how far an earlier acceptance got
        WHY: A crash or failure mid-workflow leaves no in-memory record
        HOW: Inspect offer status, transaction existence, listing status, pending siblings
        """
        with store_session("inspect accept workflow") as db:
            offer = db.get(Offer, offer_id)
            if offer is None:
                raise NotFoundError("offer", offer_id)

            workflow = cls(offer.id, offer.listing_id)
            if offer.status != OfferStatus.ACCEPTED:
                return workflow
            workflow.completed.append(AcceptStep.OFFER_ACCEPTED)

            transaction = db.query(Transaction).filter_by(offer_id=offer.id).first()
            if transaction is not None:
                workflow.transaction_id = transaction.id
                workflow.completed.append(AcceptStep.TRANSACTION_CREATED)

            listing = db.get(Listing, offer.listing_id)
            if listing is not None and listing.status == ListingStatus.SOLD:
                workflow.completed.append(AcceptStep.LISTING_SOLD)

            pending_siblings = (
                db.query(Offer)
                .filter(
                    Offer.listing_id == offer.listing_id,
                    Offer.status == OfferStatus.PENDING,
                    Offer.id != offer.id,
                )
                .count()
            )
            if pending_siblings == 0:
                workflow.completed.append(AcceptStep.SIBLINGS_DECLINED)

        logger.info(
            f"Accept offer {offer_id}: rebuilt from store, furthest step "
            f"{workflow.furthest_step.name if workflow.furthest_step else 'none'}"
        )
        return workflow

    def result(self) -> AcceptOfferResult:
        """Load the records the completed workflow produced."""
        with store_session("load accept result") as db:
            offer = db.get(Offer, self.offer_id)
            listing = db.get(Listing, self.listing_id)
            transaction = db.get(Transaction, self.transaction_id) if self.transaction_id else None
            if offer is None or listing is None or transaction is None:
                raise NotFoundError("transaction", self.transaction_id)
            covers = fetch_cover_images(db, [listing.id])
            return AcceptOfferResult(
                offer=offer_view(offer),
                transaction=transaction_view(transaction),
                listing=listing_snapshot(listing, covers.get(listing.id)),
                declined_offer_ids=list(self.declined_offer_ids),
            )

    def __repr__(self):
        furthest = self.furthest_step.name if self.furthest_step else None
        return f"<AcceptOfferWorkflow(offer={self.offer_id}, furthest={furthest}, failed={len(self.errors)})>"
