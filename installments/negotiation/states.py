"""
Negotiation State Machine

Every status an installment request can be in, and the single table of
legal moves between them. All request-level status changes go through
`next_status`, so a state that is added to the enum but not to the table
can never be entered or left by accident.

    PENDING_SINICAR_REVIEW
      --review approved (full or partial)--> WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR
      --review rejected--------------------> REJECTED_BY_SINICAR
    WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR, WAITING_FOR_SUPPLIER_OFFERS
      --forward----------------------------> FORWARDED_TO_SUPPLIERS
    FORWARDED_TO_SUPPLIERS, WAITING_FOR_SUPPLIER_OFFERS,
    WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR
      --offer created----------------------> WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER
    WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER
      --offer accepted---------------------> ACTIVE_CONTRACT
      --offer rejected---------------------> WAITING_FOR_SUPPLIER_OFFERS
    ACTIVE_CONTRACT --complete-------------> COMPLETED
    non-terminal (except ACTIVE_CONTRACT) --cancel--> CANCELLED
    non-terminal --close-------------------> CLOSED
"""
import enum
from typing import NamedTuple

from installments.errors import InvalidTransitionError


class InstallmentStatus(str, enum.Enum):
    PENDING_SINICAR_REVIEW = "PENDING_SINICAR_REVIEW"
    WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR = "WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR"
    REJECTED_BY_SINICAR = "REJECTED_BY_SINICAR"
    FORWARDED_TO_SUPPLIERS = "FORWARDED_TO_SUPPLIERS"
    WAITING_FOR_SUPPLIER_OFFERS = "WAITING_FOR_SUPPLIER_OFFERS"
    WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER = "WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER"
    ACTIVE_CONTRACT = "ACTIVE_CONTRACT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class SinicarDecision(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED_FULL = "APPROVED_FULL"
    APPROVED_PARTIAL = "APPROVED_PARTIAL"
    REJECTED = "REJECTED"


class PaymentFrequency(str, enum.Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class OfferSource(str, enum.Enum):
    SINICAR = "SINICAR"
    SUPPLIER = "SUPPLIER"


class OfferType(str, enum.Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


class OfferStatus(str, enum.Enum):
    WAITING_FOR_CUSTOMER = "WAITING_FOR_CUSTOMER"
    ACCEPTED_BY_CUSTOMER = "ACCEPTED_BY_CUSTOMER"
    REJECTED_BY_CUSTOMER = "REJECTED_BY_CUSTOMER"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class NegotiationEvent(str, enum.Enum):
    """Request-level events that drive the state machine."""
    REVIEW_APPROVED = "reviewed"
    REVIEW_REJECTED = "review_rejected"
    FORWARDED = "forwarded"
    OFFER_CREATED = "offer_created"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class Transition(NamedTuple):
    sources: frozenset
    target: InstallmentStatus


S = InstallmentStatus

TERMINAL_STATUSES = frozenset({
    S.REJECTED_BY_SINICAR,
    S.COMPLETED,
    S.CANCELLED,
    S.CLOSED,
})

NON_TERMINAL_STATUSES = frozenset(s for s in S if s not in TERMINAL_STATUSES)

TRANSITIONS: dict[NegotiationEvent, Transition] = {
    NegotiationEvent.REVIEW_APPROVED: Transition(
        frozenset({S.PENDING_SINICAR_REVIEW}),
        S.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR,
    ),
    NegotiationEvent.REVIEW_REJECTED: Transition(
        frozenset({S.PENDING_SINICAR_REVIEW}),
        S.REJECTED_BY_SINICAR,
    ),
    NegotiationEvent.FORWARDED: Transition(
        frozenset({
            S.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR,
            S.WAITING_FOR_SUPPLIER_OFFERS,
        }),
        S.FORWARDED_TO_SUPPLIERS,
    ),
    NegotiationEvent.OFFER_CREATED: Transition(
        frozenset({
            S.FORWARDED_TO_SUPPLIERS,
            S.WAITING_FOR_SUPPLIER_OFFERS,
            S.WAITING_FOR_CUSTOMER_DECISION_ON_PARTIAL_SINICAR,
        }),
        S.WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER,
    ),
    NegotiationEvent.OFFER_ACCEPTED: Transition(
        frozenset({S.WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER}),
        S.ACTIVE_CONTRACT,
    ),
    NegotiationEvent.OFFER_REJECTED: Transition(
        frozenset({S.WAITING_FOR_CUSTOMER_DECISION_ON_SUPPLIER_OFFER}),
        S.WAITING_FOR_SUPPLIER_OFFERS,
    ),
    NegotiationEvent.COMPLETED: Transition(
        frozenset({S.ACTIVE_CONTRACT}),
        S.COMPLETED,
    ),
    NegotiationEvent.CANCELLED: Transition(
        NON_TERMINAL_STATUSES - {S.ACTIVE_CONTRACT},
        S.CANCELLED,
    ),
    NegotiationEvent.CLOSED: Transition(
        NON_TERMINAL_STATUSES,
        S.CLOSED,
    ),
}

REVIEW_EVENTS = {
    SinicarDecision.APPROVED_FULL: NegotiationEvent.REVIEW_APPROVED,
    SinicarDecision.APPROVED_PARTIAL: NegotiationEvent.REVIEW_APPROVED,
    SinicarDecision.REJECTED: NegotiationEvent.REVIEW_REJECTED,
}


def next_status(current: InstallmentStatus, event: NegotiationEvent) -> InstallmentStatus:
    """
    Resolve the status a request moves to when `event` happens.

    Raises:
        InvalidTransitionError: if `event` is not legal from `current`
    """
    current = InstallmentStatus(current)
    transition = TRANSITIONS[event]
    if current not in transition.sources:
        raise InvalidTransitionError(current, transition.target)
    return transition.target


def can_transition(current: InstallmentStatus, event: NegotiationEvent) -> bool:
    return InstallmentStatus(current) in TRANSITIONS[event].sources


def review_event(decision: SinicarDecision) -> NegotiationEvent:
    """Map a reviewer verdict to its state machine event."""
    try:
        return REVIEW_EVENTS[SinicarDecision(decision)]
    except KeyError:
        raise InvalidTransitionError(
            InstallmentStatus.PENDING_SINICAR_REVIEW, decision
        ) from None
