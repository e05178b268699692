"""Pure negotiation rules: state machine, policy bounds and payment schedules."""
from installments.negotiation.policy import PolicySettings, validate_request_policy
from installments.negotiation.states import InstallmentStatus, NegotiationEvent, next_status

__all__ = [
    "InstallmentStatus",
    "NegotiationEvent",
    "PolicySettings",
    "next_status",
    "validate_request_policy",
]
