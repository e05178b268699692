"""Persistence for installment offers, including the atomic customer response."""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, joinedload

from installments.database import transaction
from installments.errors import InvalidTransitionError, NotFoundError
from installments.logging import get_logger
from installments.models import InstallmentOffer, InstallmentRequest
from installments.negotiation.states import InstallmentStatus, OfferStatus
from installments.schemas import CreateOfferRequest, ScheduleEntry
from installments.stores.requests import RequestStore

logger = get_logger(__name__)


class OfferStore:
    """Reads and writes offers tied to an installment request."""

    def __init__(self, db: Session, requests: Optional[RequestStore] = None):
        self.db = db
        self.requests = requests or RequestStore(db)

    def find_by_id(self, offer_id: str) -> Optional[InstallmentOffer]:
        """Load an offer together with its parent request."""
        return (
            self.db.query(InstallmentOffer)
            .options(joinedload(InstallmentOffer.request))
            .filter(InstallmentOffer.id == offer_id)
            .populate_existing()
            .one_or_none()
        )

    def get(self, offer_id: str) -> InstallmentOffer:
        offer = self.find_by_id(offer_id)
        if offer is None:
            raise NotFoundError("Installment offer", offer_id)
        return offer

    def find_for_request(self, request_id: str) -> list[InstallmentOffer]:
        """All offers of a request, newest first."""
        return (
            self.db.query(InstallmentOffer)
            .filter(InstallmentOffer.request_id == request_id)
            .order_by(InstallmentOffer.created_at.desc(), InstallmentOffer.id)
            .all()
        )

    def create_offer(
        self,
        request_id: str,
        expected: InstallmentStatus,
        request_status: InstallmentStatus,
        data: CreateOfferRequest,
        schedule: list[ScheduleEntry],
        created_by: str,
    ) -> InstallmentOffer:
        """
        Insert an offer in WAITING_FOR_CUSTOMER and move its request to
        `request_status`, both in one transaction.
        """
        items_approved = None
        if data.items_approved is not None:
            items_approved = [
                item.model_dump(mode="json", by_alias=True) for item in data.items_approved
            ]

        offer = InstallmentOffer(
            request_id=request_id,
            source_type=data.source_type,
            supplier_id=data.supplier_id,
            supplier_name=data.supplier_name,
            type=data.type,
            items_approved=items_approved,
            total_approved_value=data.total_approved_value,
            schedule=[entry.model_dump(mode="json", by_alias=True) for entry in schedule],
            notes=data.notes,
            created_by=created_by,
            status=OfferStatus.WAITING_FOR_CUSTOMER,
        )

        with transaction(self.db):
            self.requests.compare_and_set(request_id, expected, {"status": request_status})
            self.db.add(offer)

        self.db.refresh(offer)
        return offer

    def respond_to_offer(
        self,
        offer_id: str,
        accept: bool,
        expected_request_status: InstallmentStatus,
        request_status: InstallmentStatus,
        reason: Optional[str] = None,
    ) -> tuple[InstallmentOffer, InstallmentRequest]:
        """
        Record the customer's answer to an offer.

        The offer update and the request update commit together or not at
        all. Accepting also points the request's accepted_offer_id at the
        offer. Both rows are guarded: the offer must still be
        WAITING_FOR_CUSTOMER and the request must still be in
        `expected_request_status`, otherwise InvalidTransitionError is raised
        and neither write survives.

        Returns:
            Tuple of (offer, request) as persisted
        """
        offer_status = OfferStatus.ACCEPTED_BY_CUSTOMER if accept else OfferStatus.REJECTED_BY_CUSTOMER

        with transaction(self.db):
            offer = (
                self.db.query(InstallmentOffer)
                .filter(InstallmentOffer.id == offer_id)
                .with_for_update()
                .populate_existing()
                .one_or_none()
            )
            if offer is None:
                raise NotFoundError("Installment offer", offer_id)

            request_id = offer.request_id
            # Lock the parent row so a racing response waits for this one
            (
                self.db.query(InstallmentRequest.id)
                .filter(InstallmentRequest.id == request_id)
                .with_for_update()
                .one()
            )

            result = self.db.execute(
                update(InstallmentOffer)
                .where(InstallmentOffer.id == offer_id)
                .where(InstallmentOffer.status == OfferStatus.WAITING_FOR_CUSTOMER)
                .values(
                    status=offer_status,
                    response_reason=reason,
                    responded_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = (
                    self.db.query(InstallmentOffer.status)
                    .filter(InstallmentOffer.id == offer_id)
                    .scalar()
                )
                raise InvalidTransitionError(current, offer_status, entity="offer")

            request_values = {"status": request_status}
            if accept:
                request_values["accepted_offer_id"] = offer_id
            self.requests.compare_and_set(request_id, expected_request_status, request_values)

        logger.info(
            "offer_response_persisted",
            offer_id=offer_id,
            installment_request_id=request_id,
            offer_status=offer_status.value,
            request_status=InstallmentStatus(request_status).value,
        )

        return self.get(offer_id), self.requests.get(request_id)
