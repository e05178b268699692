"""Negotiation engine for installment financing requests."""
import enum
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy.orm import Session

from installments import metrics
from installments.config import Settings, settings as app_settings
from installments.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotAllowedForSuppliersError,
    PolicyViolationError,
)
from installments.logging import TimedOperation, log_transition
from installments.models import InstallmentOffer, InstallmentRequest
from installments.negotiation.policy import PolicySettings, validate_request_policy
from installments.negotiation.schedule import generate_payment_schedule
from installments.negotiation.states import (
    InstallmentStatus,
    NegotiationEvent,
    OfferSource,
    OfferStatus,
    next_status,
    review_event,
)
from installments.schemas import (
    AdminReviewRequest,
    CreateInstallmentRequest,
    CreateOfferRequest,
    ForwardToSuppliersRequest,
    InstallmentFilters,
    OfferDecisionRequest,
    Pagination,
    SettingsUpdate,
    StatsResponse,
)
from installments.stores import OfferStore, RequestStore, SettingsStore

logger = structlog.get_logger()

PENDING_STATUSES = frozenset({
    InstallmentStatus.PENDING_SINICAR_REVIEW,
    InstallmentStatus.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR,
    InstallmentStatus.FORWARDED_TO_SUPPLIERS,
    InstallmentStatus.WAITING_FOR_SUPPLIER_OFFERS,
    InstallmentStatus.WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER,
})
CLOSED_STATUSES = frozenset({
    InstallmentStatus.CANCELLED,
    InstallmentStatus.CLOSED,
    InstallmentStatus.REJECTED_BY_SINICAR,
})


class ActorRole(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    SUPPLIER = "SUPPLIER"


@dataclass(frozen=True)
class Actor:
    """The authenticated party performing an operation."""
    id: str
    role: ActorRole
    name: Optional[str] = None


@dataclass
class InstallmentEvent:
    """Something happened that downstream collaborators may notify about."""
    event_type: str
    installment_request_id: str
    status: str
    customer_id: str
    actor_id: Optional[str] = None
    offer_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            "event": self.event_type,
            "installment_request_id": self.installment_request_id,
            "status": self.status,
            "customer_id": self.customer_id,
            "actor_id": self.actor_id,
            "offer_id": self.offer_id,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


EventSink = Callable[[InstallmentEvent], None]


class NegotiationEngine:
    """
    Orchestrates installment negotiations.

    This service:
    1. Checks new requests against the current policy settings
    2. Drives every request through the state machine in negotiation/states.py
    3. Generates payment schedules for offers that arrive without one
    4. Delegates all writes to the stores, which guard them with compare-and-set
    5. Emits an InstallmentEvent for every successful mutation

    The engine keeps no state between calls and can be built per request.
    Failed preconditions are raised before anything is written.
    """

    def __init__(
        self,
        db: Session,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], date]] = None,
        config: Optional[Settings] = None,
    ):
        """
        Initialize the engine.

        Args:
            db: SQLAlchemy database session
            event_sink: Receives events for successful mutations (defaults to none)
            clock: Returns "today" for schedule generation (defaults to date.today)
            config: Application settings (defaults to the module-level settings)
        """
        self.config = config or app_settings
        self.requests = RequestStore(db)
        self.offers = OfferStore(db, self.requests)
        self.settings = SettingsStore(db, self.config)
        self.event_sink = event_sink
        self.clock = clock or date.today

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create(self, actor: Actor, data: CreateInstallmentRequest) -> InstallmentRequest:
        """
        Submit a new installment request for the acting customer.

        Raises:
            FeatureDisabledError, ValueOutOfRangeError, DurationOutOfRangeError
        """
        with self._operation("create", customer_id=actor.id):
            policy = self.settings.get()
            try:
                validate_request_policy(
                    policy, data.total_requested_value, data.requested_duration_months
                )
            except PolicyViolationError as e:
                metrics.record_policy_rejection(e.code)
                raise

            request = self.requests.create(actor.id, actor.name, data)

        metrics.record_request_created(request.payment_frequency, request.total_requested_value)
        logger.info(
            "installment_request_created",
            installment_request_id=request.id,
            customer_id=request.customer_id,
            total_requested_value=str(request.total_requested_value),
            duration_months=request.requested_duration_months,
            frequency=request.payment_frequency.value,
            item_count=len(request.items),
        )
        self._emit("installment.created", request, actor)
        return request

    def admin_review(
        self, request_id: str, actor: Actor, data: AdminReviewRequest
    ) -> InstallmentRequest:
        """Record the reviewer's verdict on a request awaiting review."""
        with self._operation("admin_review", installment_request_id=request_id):
            request = self.requests.get(request_id)
            previous = request.status
            event = review_event(data.sinicar_decision)
            target = next_status(previous, event)

            request = self.requests.record_review(
                request_id,
                target,
                data.sinicar_decision,
                reviewed_by=actor.id,
                admin_notes=data.admin_notes,
                allowed_for_suppliers=data.allowed_for_suppliers,
            )

        self._transitioned(
            request, previous, event, actor,
            sinicar_decision=data.sinicar_decision.value,
            allowed_for_suppliers=data.allowed_for_suppliers,
        )
        return request

    def forward_to_suppliers(
        self,
        request_id: str,
        data: ForwardToSuppliersRequest,
        actor: Optional[Actor] = None,
    ) -> InstallmentRequest:
        """
        Route a reviewed request to external suppliers.

        Both supplier gates are checked before the request state, so a closed
        gate is reported even for a request that could not be forwarded anyway.

        Raises:
            NotAllowedForSuppliersError: supplier offers are disabled, or the
                reviewer did not allow this request to reach suppliers
            InvalidTransitionError: the request is not in a forwardable state
        """
        with self._operation("forward_to_suppliers", installment_request_id=request_id):
            request = self.requests.get(request_id)
            previous = request.status

            policy = self.settings.get()
            if not policy.allow_supplier_offers:
                raise NotAllowedForSuppliersError(request_id, "supplier offers are disabled")
            if not request.allowed_for_suppliers:
                raise NotAllowedForSuppliersError(request_id, "reviewer did not allow supplier offers")
            next_status(previous, NegotiationEvent.FORWARDED)

            request = self.requests.record_forwarding(request_id, previous, data.supplier_ids)

        self._transitioned(
            request, previous, NegotiationEvent.FORWARDED, actor,
            supplier_ids=list(request.forwarded_to_supplier_ids),
        )
        return request

    def create_offer(
        self, request_id: str, actor: Actor, data: CreateOfferRequest
    ) -> InstallmentOffer:
        """
        Add a financing offer to a request.

        When the offer carries no schedule, one is generated from the
        request's duration and frequency and the offer's approved value.
        """
        with self._operation("create_offer", installment_request_id=request_id):
            request = self.requests.get(request_id)
            previous = request.status
            target = next_status(previous, NegotiationEvent.OFFER_CREATED)

            if (
                data.source_type is OfferSource.SUPPLIER
                and data.supplier_id is None
                and actor.role is ActorRole.SUPPLIER
            ):
                data = data.model_copy(update={"supplier_id": actor.id, "supplier_name": actor.name})

            schedule = data.schedule
            generated = schedule is None
            if generated:
                schedule = generate_payment_schedule(
                    data.total_approved_value,
                    request.requested_duration_months,
                    request.payment_frequency,
                    today=self.clock(),
                    first_due_offset_days=self.config.schedule_first_due_offset_days,
                )

            offer = self.offers.create_offer(
                request_id, previous, target, data, schedule, created_by=actor.id
            )

        metrics.record_offer_created(offer.source_type, generated)
        request = self.requests.get(request_id)
        self._transitioned(
            request, previous, NegotiationEvent.OFFER_CREATED, actor,
            offer=offer,
            source_type=offer.source_type.value,
            total_approved_value=str(offer.total_approved_value),
            payments=len(offer.schedule),
            generated_schedule=generated,
        )
        return offer

    def respond_to_offer(
        self, offer_id: str, actor: Actor, data: OfferDecisionRequest
    ) -> tuple[InstallmentOffer, InstallmentRequest]:
        """
        Apply the customer's accept/reject to an offer.

        Ownership is checked before any state rule, so a customer answering
        someone else's offer always gets ForbiddenError.

        Returns:
            Tuple of (offer, request) after the atomic update
        """
        with self._operation("respond_to_offer", offer_id=offer_id, action=data.action):
            offer = self.offers.get(offer_id)
            request = offer.request
            if request.customer_id != actor.id:
                raise ForbiddenError(actor.id, request.id)

            previous = request.status
            event = NegotiationEvent.OFFER_ACCEPTED if data.accept else NegotiationEvent.OFFER_REJECTED
            target = next_status(previous, event)

            if offer.status is not OfferStatus.WAITING_FOR_CUSTOMER:
                attempted = (
                    OfferStatus.ACCEPTED_BY_CUSTOMER if data.accept else OfferStatus.REJECTED_BY_CUSTOMER
                )
                raise InvalidTransitionError(offer.status, attempted, entity="offer")

            offer, request = self.offers.respond_to_offer(
                offer_id, data.accept, previous, target, reason=data.reason
            )

        metrics.record_offer_response(data.accept, offer.source_type)
        self._transitioned(
            request, previous, event, actor,
            offer=offer,
            source_type=offer.source_type.value,
            reason=data.reason,
        )
        return offer, request

    def cancel(
        self, request_id: str, actor: Actor, reason: Optional[str] = None
    ) -> InstallmentRequest:
        """Cancel a request on behalf of its owning customer."""
        with self._operation("cancel", installment_request_id=request_id):
            request = self.requests.get(request_id)
            if request.customer_id != actor.id:
                raise ForbiddenError(actor.id, request_id)

            previous = request.status
            target = next_status(previous, NegotiationEvent.CANCELLED)
            request = self.requests.update_status(request_id, previous, target, closed_reason=reason)

        self._transitioned(request, previous, NegotiationEvent.CANCELLED, actor, reason=reason)
        return request

    def close(
        self, request_id: str, reason: str, actor: Optional[Actor] = None
    ) -> InstallmentRequest:
        """Administratively close a request that has not reached a terminal state."""
        with self._operation("close", installment_request_id=request_id):
            request = self.requests.get(request_id)
            previous = request.status
            target = next_status(previous, NegotiationEvent.CLOSED)
            request = self.requests.update_status(request_id, previous, target, closed_reason=reason)

        self._transitioned(request, previous, NegotiationEvent.CLOSED, actor, reason=reason)
        return request

    def complete(self, request_id: str, actor: Optional[Actor] = None) -> InstallmentRequest:
        """Mark an active contract as completed."""
        with self._operation("complete", installment_request_id=request_id):
            request = self.requests.get(request_id)
            previous = request.status
            target = next_status(previous, NegotiationEvent.COMPLETED)
            request = self.requests.update_status(request_id, previous, target)

        self._transitioned(request, previous, NegotiationEvent.COMPLETED, actor)
        return request

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, request_id: str) -> InstallmentRequest:
        return self.requests.get(request_id)

    def list_requests(
        self, filters: InstallmentFilters, pagination: Pagination
    ) -> tuple[list[InstallmentRequest], int]:
        return self.requests.find_many(filters, pagination)

    def list_for_customer(
        self, customer_id: str, pagination: Pagination
    ) -> tuple[list[InstallmentRequest], int]:
        return self.requests.find_by_customer(customer_id, pagination)

    def list_offers(self, request_id: str) -> list[InstallmentOffer]:
        self.requests.get(request_id)
        return self.offers.find_for_request(request_id)

    def get_stats(self, customer_id: Optional[str] = None) -> StatsResponse:
        """
        Summarize requests by lifecycle bucket.

        pending counts every state still under negotiation; cancelled counts
        cancelled, closed and reviewer-rejected requests.
        """
        stats = {"total": 0, "pending": 0, "active": 0, "completed": 0, "cancelled": 0}
        total_value = Decimal("0")

        for status, count, value in self.requests.status_totals(customer_id):
            status = InstallmentStatus(status)
            stats["total"] += count
            total_value += Decimal(value or 0)
            if status in PENDING_STATUSES:
                stats["pending"] += count
            elif status is InstallmentStatus.ACTIVE_CONTRACT:
                stats["active"] += count
            elif status is InstallmentStatus.COMPLETED:
                stats["completed"] += count
            elif status in CLOSED_STATUSES:
                stats["cancelled"] += count

        return StatsResponse(total_value=total_value, **stats)

    def get_settings(self) -> PolicySettings:
        return self.settings.get()

    def update_settings(self, patch: SettingsUpdate) -> PolicySettings:
        return self.settings.update(patch)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str, **fields):
        start_time = time.perf_counter()
        try:
            with TimedOperation(f"installment_{name}", logger, **fields):
                yield
        except InvalidTransitionError:
            metrics.record_invalid_transition(name)
            raise
        finally:
            metrics.record_operation_latency(name, time.perf_counter() - start_time)

    def _transitioned(
        self,
        request: InstallmentRequest,
        previous: InstallmentStatus,
        event: NegotiationEvent,
        actor: Optional[Actor],
        offer: Optional[InstallmentOffer] = None,
        **data,
    ) -> None:
        log_transition(
            logger,
            installment_request_id=request.id,
            from_status=previous,
            to_status=request.status,
            event=event,
            actor_id=actor.id if actor else None,
            offer_id=offer.id if offer else None,
        )
        metrics.record_transition(event, request.status)
        self._emit(f"installment.{event.value}", request, actor, offer=offer, **data)

    def _emit(
        self,
        event_type: str,
        request: InstallmentRequest,
        actor: Optional[Actor],
        offer: Optional[InstallmentOffer] = None,
        **data,
    ) -> None:
        if self.event_sink is None:
            return
        self.event_sink(
            InstallmentEvent(
                event_type=event_type,
                installment_request_id=request.id,
                status=request.status.value,
                customer_id=request.customer_id,
                actor_id=actor.id if actor else None,
                offer_id=offer.id if offer else None,
                data=data,
            )
        )
