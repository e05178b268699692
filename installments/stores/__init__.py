"""SQLAlchemy-backed stores used by the negotiation engine."""
from installments.stores.offers import OfferStore
from installments.stores.requests import RequestStore
from installments.stores.settings import SettingsStore

__all__ = ["OfferStore", "RequestStore", "SettingsStore"]
