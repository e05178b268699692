"""Service layer for the installment negotiation service."""
from installments.services.negotiation import Actor, ActorRole, InstallmentEvent, NegotiationEngine
from installments.services.webhook import WebhookService

__all__ = ["Actor", "ActorRole", "InstallmentEvent", "NegotiationEngine", "WebhookService"]
