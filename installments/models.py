"""SQLAlchemy ORM models for the installment negotiation service."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Boolean, DateTime, Enum,
    Integer, ForeignKey, Numeric, Text, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from installments.database import Base
from installments.negotiation.states import (
    InstallmentStatus, SinicarDecision, PaymentFrequency,
    OfferSource, OfferType, OfferStatus,
)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")

Money = Numeric(14, 2)


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    """Store the enum's exact string token, not a database-native enum."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=64,
        values_callable=lambda members: [m.value for m in members],
    )


class InstallmentRequest(Base):
    """A customer's ask to finance a set of parts in installments."""
    __tablename__ = "installment_request"

    id = Column(String(36), primary_key=True, default=_uuid)
    customer_id = Column(Text, nullable=False, index=True)
    customer_name = Column(Text)
    total_requested_value = Column(Money, nullable=False)
    payment_frequency = Column(_enum(PaymentFrequency), nullable=False, default=PaymentFrequency.MONTHLY)
    requested_duration_months = Column(Integer, nullable=False)
    status = Column(
        _enum(InstallmentStatus), nullable=False, index=True,
        default=InstallmentStatus.PENDING_SINICAR_REVIEW,
    )

    # Reviewer verdict
    sinicar_decision = Column(_enum(SinicarDecision), nullable=False, default=SinicarDecision.PENDING)
    admin_notes = Column(Text)
    allowed_for_suppliers = Column(Boolean, nullable=False, default=False)
    reviewed_by = Column(Text)
    reviewed_at = Column(DateTime(timezone=True))

    forwarded_to_supplier_ids = Column(JsonColumn, nullable=False, default=list)
    # Not a foreign key: offers already reference their request
    accepted_offer_id = Column(String(36))

    closed_reason = Column(Text)
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    # Relationships
    items = relationship(
        "InstallmentItem", back_populates="request",
        cascade="all, delete-orphan", order_by="InstallmentItem.position",
    )
    offers = relationship(
        "InstallmentOffer", back_populates="request",
        order_by="InstallmentOffer.created_at.desc()",
    )


class InstallmentItem(Base):
    """A part line on an installment request. Immutable once created."""
    __tablename__ = "installment_item"

    id = Column(String(36), primary_key=True, default=_uuid)
    request_id = Column(String(36), ForeignKey("installment_request.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    part_number = Column(Text, nullable=False)
    part_name = Column(Text)
    quantity = Column(Integer, nullable=False)
    estimated_price = Column(Money, nullable=False)

    # Relationship
    request = relationship("InstallmentRequest", back_populates="items")


class InstallmentOffer(Base):
    """A financing proposal from the internal reviewer or a supplier."""
    __tablename__ = "installment_offer"

    id = Column(String(36), primary_key=True, default=_uuid)
    request_id = Column(String(36), ForeignKey("installment_request.id", ondelete="CASCADE"), nullable=False, index=True)
    source_type = Column(_enum(OfferSource), nullable=False, default=OfferSource.SINICAR)
    supplier_id = Column(Text)
    supplier_name = Column(Text)
    type = Column(_enum(OfferType), nullable=False, default=OfferType.FULL)
    items_approved = Column(JsonColumn)
    total_approved_value = Column(Money, nullable=False)
    schedule = Column(JsonColumn, nullable=False)
    notes = Column(Text)
    created_by = Column(Text)
    status = Column(_enum(OfferStatus), nullable=False, default=OfferStatus.WAITING_FOR_CUSTOMER)
    response_reason = Column(Text)
    responded_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationship
    request = relationship("InstallmentRequest", back_populates="offers")


class InstallmentSettings(Base):
    """Singleton policy record, keyed "global"."""
    __tablename__ = "installment_settings"

    key = Column(String(32), primary_key=True, default="global")
    enable_installments = Column(Boolean, nullable=False)
    min_installment_value = Column(Money, nullable=False)
    max_installment_value = Column(Money, nullable=False)
    min_duration_months = Column(Integer, nullable=False)
    max_duration_months = Column(Integer, nullable=False)
    allow_supplier_offers = Column(Boolean, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class OutboundWebhook(Base):
    """Tracks outbound negotiation event delivery attempts."""
    __tablename__ = "outbound_webhook"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_type = Column(Text, nullable=False)
    payload = Column(JsonColumn, nullable=False)
    target_url = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    last_attempt_at = Column(DateTime(timezone=True))
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
