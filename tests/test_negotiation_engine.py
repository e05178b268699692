"""
Negotiation Engine Tests.

These tests drive requests through the full negotiation: creation under
policy, reviewer verdict, forwarding, offers, the customer's answer and
the administrative exits. The engine runs against SQLite with a fixed
clock, and events are collected instead of delivered.
"""
from datetime import date
from decimal import Decimal

import pytest

from installments.errors import (
    DurationOutOfRangeError,
    FeatureDisabledError,
    ForbiddenError,
    InvalidTransitionError,
    NotAllowedForSuppliersError,
    NotFoundError,
    ScheduleError,
    ValueOutOfRangeError,
)
from installments.negotiation.states import (
    InstallmentStatus,
    OfferSource,
    OfferStatus,
    PaymentFrequency,
    SinicarDecision,
)
from installments.schemas import (
    AdminReviewRequest,
    CreateOfferRequest,
    ForwardToSuppliersRequest,
    InstallmentFilters,
    OfferDecisionRequest,
    Pagination,
    ScheduleEntry,
    SettingsUpdate,
)

S = InstallmentStatus


def approve(allowed_for_suppliers=True, decision=SinicarDecision.APPROVED_FULL):
    return AdminReviewRequest(
        sinicar_decision=decision,
        admin_notes="looks fine",
        allowed_for_suppliers=allowed_for_suppliers,
    )


def sinicar_offer(total="6000", **kwargs):
    return CreateOfferRequest(
        source_type=OfferSource.SINICAR, total_approved_value=Decimal(total), **kwargs
    )


def supplier_offer(total="6000", **kwargs):
    return CreateOfferRequest(
        source_type=OfferSource.SUPPLIER, total_approved_value=Decimal(total), **kwargs
    )


ACCEPT = OfferDecisionRequest(action="accept")
REJECT = OfferDecisionRequest(action="reject", reason="rate too high")


class NegotiationTestCase:
    """Shared setup: one engine, a customer, an admin and a supplier."""

    @pytest.fixture(autouse=True)
    def setup(self, negotiation, events, customer, other_customer, admin, supplier, request_data):
        self.engine = negotiation
        self.events = events
        self.customer = customer
        self.other_customer = other_customer
        self.admin = admin
        self.supplier = supplier
        self.request_data = request_data

    def _create(self, **kwargs):
        return self.engine.create(self.customer, self.request_data(**kwargs))

    def _reviewed(self, **kwargs):
        request = self._create()
        return self.engine.admin_review(request.id, self.admin, approve(**kwargs))

    def _with_offer(self):
        request = self._reviewed()
        offer = self.engine.create_offer(request.id, self.admin, sinicar_offer())
        return request, offer

    def _event_types(self):
        return [e.event_type for e in self.events]


# =============================================================================
# END-TO-END
# =============================================================================

class TestFullNegotiation(NegotiationTestCase):

    def test_supplier_path_to_completed_contract(self):
        """Create, approve, forward, reject one offer, accept another, complete."""
        request = self._create()
        assert request.status is S.PENDING_SINICAR_REVIEW

        request = self.engine.admin_review(request.id, self.admin, approve())
        assert request.status is S.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR
        assert request.sinicar_decision is SinicarDecision.APPROVED_FULL
        assert request.allowed_for_suppliers is True
        assert request.reviewed_by == "admin-1"

        request = self.engine.forward_to_suppliers(
            request.id, ForwardToSuppliersRequest(supplier_ids=["supplier-1", "supplier-2", "supplier-1"]),
            self.admin,
        )
        assert request.status is S.FORWARDED_TO_SUPPLIERS
        assert request.forwarded_to_supplier_ids == ["supplier-1", "supplier-2"]

        first = self.engine.create_offer(request.id, self.supplier, supplier_offer(total="5400"))
        assert first.supplier_id == "supplier-1"
        assert first.supplier_name == "Distribuidora Norte"
        assert self.engine.get_by_id(request.id).status is S.WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER

        offer, request = self.engine.respond_to_offer(first.id, self.customer, REJECT)
        assert offer.status is OfferStatus.REJECTED_BY_CUSTOMER
        assert request.status is S.WAITING_FOR_SUPPLIER_OFFERS
        assert request.accepted_offer_id is None

        second = self.engine.create_offer(request.id, self.supplier, supplier_offer(total="6000"))
        offer, request = self.engine.respond_to_offer(second.id, self.customer, ACCEPT)
        assert offer.status is OfferStatus.ACCEPTED_BY_CUSTOMER
        assert request.status is S.ACTIVE_CONTRACT
        assert request.accepted_offer_id == second.id

        request = self.engine.complete(request.id, self.admin)
        assert request.status is S.COMPLETED

        # COMPLETED is terminal: every mutation is refused and nothing changes
        with pytest.raises(InvalidTransitionError):
            self.engine.cancel(request.id, self.customer, reason="too late")
        with pytest.raises(InvalidTransitionError):
            self.engine.close(request.id, "cleanup", self.admin)
        with pytest.raises(InvalidTransitionError):
            self.engine.complete(request.id, self.admin)
        with pytest.raises(InvalidTransitionError):
            self.engine.forward_to_suppliers(request.id, ForwardToSuppliersRequest(supplier_ids=["supplier-3"]))
        with pytest.raises(InvalidTransitionError):
            self.engine.create_offer(request.id, self.supplier, supplier_offer())
        with pytest.raises(InvalidTransitionError):
            self.engine.respond_to_offer(second.id, self.customer, REJECT)
        request = self.engine.get_by_id(request.id)
        assert request.status is S.COMPLETED
        assert request.accepted_offer_id == second.id

        assert self._event_types() == [
            "installment.created",
            "installment.reviewed",
            "installment.forwarded",
            "installment.offer_created",
            "installment.offer_rejected",
            "installment.offer_created",
            "installment.offer_accepted",
            "installment.completed",
        ]

    def test_reviewer_offer_path(self):
        """The reviewer can offer directly without involving suppliers."""
        request, offer = self._with_offer()
        assert offer.source_type is OfferSource.SINICAR
        assert offer.created_by == "admin-1"

        _, request = self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)
        assert request.status is S.ACTIVE_CONTRACT


# =============================================================================
# CREATION
# =============================================================================

class TestCreate(NegotiationTestCase):

    def test_create_records_customer(self):
        request = self._create()
        assert request.customer_id == "customer-1"
        assert request.customer_name == "Oficina Central"
        assert len(request.items) == 2
        assert self.events[0].event_type == "installment.created"
        assert self.events[0].customer_id == "customer-1"

    def test_policy_violation_stores_nothing(self):
        with pytest.raises(ValueOutOfRangeError):
            self._create(total=Decimal("500"))

        _, total = self.engine.list_requests(InstallmentFilters(), Pagination())
        assert total == 0
        assert self.events == []

    def test_disabled_feature(self):
        self.engine.update_settings(SettingsUpdate(enable_installments=False))
        with pytest.raises(FeatureDisabledError):
            self._create()

    def test_settings_change_applies_to_next_request(self):
        self._create(months=12)
        self.engine.update_settings(SettingsUpdate(max_duration_months=6))
        with pytest.raises(DurationOutOfRangeError):
            self._create(months=12)


# =============================================================================
# REVIEW AND FORWARDING
# =============================================================================

class TestReview(NegotiationTestCase):

    def test_partial_approval(self):
        request = self._create()
        request = self.engine.admin_review(
            request.id, self.admin, approve(decision=SinicarDecision.APPROVED_PARTIAL)
        )
        assert request.status is S.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR
        assert request.sinicar_decision is SinicarDecision.APPROVED_PARTIAL

    def test_rejection_is_terminal(self):
        request = self._create()
        request = self.engine.admin_review(
            request.id, self.admin, approve(decision=SinicarDecision.REJECTED)
        )
        assert request.status is S.REJECTED_BY_SINICAR
        assert self._event_types()[-1] == "installment.review_rejected"

        with pytest.raises(InvalidTransitionError):
            self.engine.cancel(request.id, self.customer)
        with pytest.raises(InvalidTransitionError):
            self.engine.close(request.id, "cleanup", self.admin)

    def test_second_review_is_rejected(self):
        request = self._reviewed()
        with pytest.raises(InvalidTransitionError):
            self.engine.admin_review(request.id, self.admin, approve())

    def test_review_unknown_request(self):
        with pytest.raises(NotFoundError):
            self.engine.admin_review("missing", self.admin, approve())


class TestForward(NegotiationTestCase):

    def test_requires_reviewer_gate(self):
        request = self._reviewed(allowed_for_suppliers=False)
        with pytest.raises(NotAllowedForSuppliersError):
            self.engine.forward_to_suppliers(request.id, ForwardToSuppliersRequest(supplier_ids=["s-1"]))
        assert self.engine.get_by_id(request.id).status is S.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR

    def test_requires_supplier_offers_enabled(self):
        request = self._reviewed()
        self.engine.update_settings(SettingsUpdate(allow_supplier_offers=False))
        with pytest.raises(NotAllowedForSuppliersError):
            self.engine.forward_to_suppliers(request.id, ForwardToSuppliersRequest(supplier_ids=["s-1"]))

    def test_closed_gate_reported_before_state(self):
        """An unreviewed request has no reviewer permission yet, and that is what forwarding reports."""
        request = self._create()
        with pytest.raises(NotAllowedForSuppliersError):
            self.engine.forward_to_suppliers(request.id, ForwardToSuppliersRequest(supplier_ids=["s-1"]))
        assert self.engine.get_by_id(request.id).status is S.PENDING_SINICAR_REVIEW

    def test_disabled_supplier_offers_reported_before_state(self):
        request = self._create()
        self.engine.update_settings(SettingsUpdate(allow_supplier_offers=False))
        with pytest.raises(NotAllowedForSuppliersError):
            self.engine.forward_to_suppliers(request.id, ForwardToSuppliersRequest(supplier_ids=["s-1"]))

    def test_open_gates_in_wrong_state_is_invalid_transition(self):
        request = self._reviewed()
        self.engine.forward_to_suppliers(request.id, ForwardToSuppliersRequest(supplier_ids=["s-1"]))
        with pytest.raises(InvalidTransitionError):
            self.engine.forward_to_suppliers(request.id, ForwardToSuppliersRequest(supplier_ids=["s-2"]))
        assert self.engine.get_by_id(request.id).forwarded_to_supplier_ids == ["s-1"]

    def test_forward_again_after_rejected_offer(self):
        request = self._reviewed()
        request = self.engine.forward_to_suppliers(
            request.id, ForwardToSuppliersRequest(supplier_ids=["s-1"])
        )
        offer = self.engine.create_offer(request.id, self.supplier, supplier_offer())
        self.engine.respond_to_offer(offer.id, self.customer, REJECT)

        request = self.engine.forward_to_suppliers(
            request.id, ForwardToSuppliersRequest(supplier_ids=["s-3", "s-4"])
        )
        assert request.status is S.FORWARDED_TO_SUPPLIERS
        assert request.forwarded_to_supplier_ids == ["s-3", "s-4"]


# =============================================================================
# OFFERS
# =============================================================================

class TestCreateOffer(NegotiationTestCase):

    def test_generated_schedule_follows_request_terms(self):
        request, offer = self._with_offer()

        assert len(offer.schedule) == 6
        assert [e["amount"] for e in offer.schedule] == ["1000"] * 6
        assert offer.schedule[0]["dueDate"] == "2025-02-14"
        assert offer.schedule[-1]["dueDate"] == "2025-07-14"
        assert sum(Decimal(e["amount"]) for e in offer.schedule) == Decimal("6000")
        assert all(e["status"] == "PENDING" for e in offer.schedule)

    def test_generated_weekly_schedule(self):
        request = self.engine.create(
            self.customer, self.request_data(total=Decimal("3000"), months=2, frequency=PaymentFrequency.WEEKLY)
        )
        self.engine.admin_review(request.id, self.admin, approve())
        offer = self.engine.create_offer(request.id, self.admin, sinicar_offer(total="3000"))
        assert len(offer.schedule) == 8
        assert offer.schedule[1]["dueDate"] == "2025-02-21"

    def test_explicit_schedule_is_kept(self):
        request = self._reviewed()
        schedule = [
            ScheduleEntry(payment_number=1, due_date=date(2025, 3, 1), amount=Decimal("4000")),
            ScheduleEntry(payment_number=2, due_date=date(2025, 4, 1), amount=Decimal("2000")),
        ]
        offer = self.engine.create_offer(request.id, self.admin, sinicar_offer(schedule=schedule))
        assert [e["amount"] for e in offer.schedule] == ["4000", "2000"]
        assert offer.schedule[0]["dueDate"] == "2025-03-01"

    def test_schedule_error_leaves_request_unchanged(self):
        request = self._reviewed()
        with pytest.raises(ScheduleError):
            self.engine.create_offer(request.id, self.admin, sinicar_offer(total="3"))
        assert self.engine.get_by_id(request.id).status is S.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR
        assert self.engine.list_offers(request.id) == []

    def test_offer_on_pending_request_is_invalid(self):
        request = self._create()
        with pytest.raises(InvalidTransitionError):
            self.engine.create_offer(request.id, self.admin, sinicar_offer())

    def test_only_one_open_offer_at_a_time(self):
        request, _ = self._with_offer()
        with pytest.raises(InvalidTransitionError):
            self.engine.create_offer(request.id, self.supplier, supplier_offer())

    def test_list_offers(self):
        request, offer = self._with_offer()
        assert [o.id for o in self.engine.list_offers(request.id)] == [offer.id]
        with pytest.raises(NotFoundError):
            self.engine.list_offers("missing")


class TestRespondToOffer(NegotiationTestCase):

    def test_other_customer_is_forbidden(self):
        _, offer = self._with_offer()
        with pytest.raises(ForbiddenError):
            self.engine.respond_to_offer(offer.id, self.other_customer, ACCEPT)
        assert self.engine.offers.get(offer.id).status is OfferStatus.WAITING_FOR_CUSTOMER

    def test_forbidden_even_after_offer_was_answered(self):
        """Ownership is checked before the offer's state."""
        _, offer = self._with_offer()
        self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)
        with pytest.raises(ForbiddenError):
            self.engine.respond_to_offer(offer.id, self.other_customer, REJECT)

    def test_answering_twice_is_invalid(self):
        request, offer = self._with_offer()
        self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)

        with pytest.raises(InvalidTransitionError):
            self.engine.respond_to_offer(offer.id, self.customer, REJECT)

        request = self.engine.get_by_id(request.id)
        assert request.status is S.ACTIVE_CONTRACT
        assert request.accepted_offer_id == offer.id

    def test_second_engine_answering_stale_offer_loses(self, db, events):
        """
        Two engines on one session answer the same offer one after the other.

        This covers the losing side of the compare-and-set update sequentially;
        it does not run the engines concurrently.
        """
        from installments.services.negotiation import NegotiationEngine

        request, offer = self._with_offer()
        rival = NegotiationEngine(db, event_sink=events.append)

        rival.respond_to_offer(offer.id, self.customer, REJECT)
        with pytest.raises(InvalidTransitionError):
            self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)

        request = self.engine.get_by_id(request.id)
        assert request.status is S.WAITING_FOR_SUPPLIER_OFFERS
        assert request.accepted_offer_id is None

    def test_unknown_offer(self):
        with pytest.raises(NotFoundError):
            self.engine.respond_to_offer("missing", self.customer, ACCEPT)

    def test_events_carry_offer_id(self):
        _, offer = self._with_offer()
        self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)
        event = self.events[-1]
        assert event.event_type == "installment.offer_accepted"
        assert event.offer_id == offer.id
        assert event.status == "ACTIVE_CONTRACT"


# =============================================================================
# ADMINISTRATIVE EXITS
# =============================================================================

class TestCancelCloseComplete(NegotiationTestCase):

    def test_owner_can_cancel(self):
        request = self._create()
        request = self.engine.cancel(request.id, self.customer, reason="bought elsewhere")
        assert request.status is S.CANCELLED
        assert request.closed_reason == "bought elsewhere"
        assert request.closed_at is not None

    def test_non_owner_cannot_cancel(self):
        request = self._create()
        with pytest.raises(ForbiddenError):
            self.engine.cancel(request.id, self.other_customer)

    def test_active_contract_cannot_be_cancelled(self):
        request, offer = self._with_offer()
        self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)
        with pytest.raises(InvalidTransitionError):
            self.engine.cancel(request.id, self.customer)

    def test_admin_can_close_active_contract(self):
        request, offer = self._with_offer()
        self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)
        request = self.engine.close(request.id, "customer defaulted", self.admin)
        assert request.status is S.CLOSED
        assert request.closed_reason == "customer defaulted"

    def test_closed_request_cannot_be_closed_again(self):
        request = self._create()
        self.engine.close(request.id, "duplicate", self.admin)
        with pytest.raises(InvalidTransitionError):
            self.engine.close(request.id, "duplicate", self.admin)

    def test_complete_requires_active_contract(self):
        request = self._reviewed()
        with pytest.raises(InvalidTransitionError):
            self.engine.complete(request.id, self.admin)


# =============================================================================
# QUERIES
# =============================================================================

class TestQueries(NegotiationTestCase):

    def test_stats_buckets(self):
        self._create(total=Decimal("1000"))
        cancelled = self._create(total=Decimal("2000"))
        self.engine.cancel(cancelled.id, self.customer)
        request, offer = self._with_offer()
        self.engine.respond_to_offer(offer.id, self.customer, ACCEPT)
        self.engine.create(self.other_customer, self.request_data(total=Decimal("4000")))

        stats = self.engine.get_stats()
        assert stats.total == 4
        assert stats.pending == 2
        assert stats.active == 1
        assert stats.completed == 0
        assert stats.cancelled == 1
        assert stats.total_value == Decimal("13000")

        mine = self.engine.get_stats(self.customer.id)
        assert mine.total == 3
        assert mine.pending == 1

    def test_list_for_customer(self):
        self._create()
        self._create()
        self.engine.create(self.other_customer, self.request_data())

        rows, total = self.engine.list_for_customer(self.customer.id, Pagination(limit=1))
        assert total == 2
        assert len(rows) == 1
        assert rows[0].customer_id == self.customer.id

    def test_get_unknown_request(self):
        with pytest.raises(NotFoundError):
            self.engine.get_by_id("missing")
