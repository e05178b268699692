"""
Shared fixtures for the installment negotiation tests.

Every test runs against a fresh in-memory SQLite database; the schema is
created before the test and dropped after it.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date
from decimal import Decimal

import pytest

from installments.database import Base, SessionLocal, engine
from installments.negotiation.states import PaymentFrequency
from installments.schemas import CreateInstallmentRequest, ItemInput
from installments.services.negotiation import Actor, ActorRole, NegotiationEngine

TODAY = date(2025, 1, 15)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def db():
    """A session bound to a freshly created schema."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


# =============================================================================
# ACTORS
# =============================================================================

@pytest.fixture
def customer():
    return Actor(id="customer-1", role=ActorRole.CUSTOMER, name="Oficina Central")


@pytest.fixture
def other_customer():
    return Actor(id="customer-2", role=ActorRole.CUSTOMER, name="Auto Pecas Sul")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN, name="Reviewer")


@pytest.fixture
def supplier():
    return Actor(id="supplier-1", role=ActorRole.SUPPLIER, name="Distribuidora Norte")


# =============================================================================
# ENGINE
# =============================================================================

@pytest.fixture
def events():
    """Events emitted by the engine, in order."""
    return []


@pytest.fixture
def negotiation(db, events):
    """Engine with a fixed clock that records its events."""
    return NegotiationEngine(db, event_sink=events.append, clock=lambda: TODAY)


def make_request_data(
    total=Decimal("6000"),
    months: int = 6,
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY,
) -> CreateInstallmentRequest:
    """Helper to build a valid new-request body."""
    return CreateInstallmentRequest(
        total_requested_value=Decimal(total),
        payment_frequency=frequency,
        requested_duration_months=months,
        items=[
            ItemInput(part_number="BRK-001", part_name="Brake pads", quantity=4, estimated_price=Decimal("1000")),
            ItemInput(part_number="FLT-220", part_name="Oil filter", quantity=10, estimated_price=Decimal("200")),
        ],
    )


@pytest.fixture
def request_data():
    """Factory for new-request bodies."""
    return make_request_data
