"""HTTP routes for the installment negotiation service."""
from installments.api.routes import router

__all__ = ["router"]
