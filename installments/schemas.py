"""Pydantic schemas for request/response validation.

Field names are snake_case in Python and camelCase on the wire
(e.g. ``total_requested_value`` <-> ``totalRequestedValue``).

Money inputs are limited to 14 digits with at most 2 decimal places, the
precision of the ``Numeric(14, 2)`` columns they are stored in.
"""
from datetime import datetime, date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from installments.negotiation.states import (
    InstallmentStatus, SinicarDecision, PaymentFrequency,
    OfferSource, OfferType, OfferStatus, PaymentStatus,
)


class ApiModel(BaseModel):
    """Base model: camelCase aliases, accepts snake_case names and ORM objects."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# SHARED PIECES
# =============================================================================

class ScheduleEntry(ApiModel):
    """One due payment. Wire shape: {paymentNumber, dueDate, amount, status}."""
    payment_number: int = Field(..., ge=1)
    due_date: date
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    status: PaymentStatus = PaymentStatus.PENDING


class ItemInput(ApiModel):
    """A part line submitted with a new request."""
    part_number: str = Field(..., min_length=1)
    part_name: Optional[str] = None
    quantity: int = Field(..., ge=1)
    estimated_price: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)


class ApprovedItem(ApiModel):
    """A part line as approved in an offer."""
    part_number: str
    quantity: int = Field(..., ge=0)
    approved_price: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)


# =============================================================================
# COMMAND BODIES
# =============================================================================

class CreateInstallmentRequest(ApiModel):
    """Request body for POST /v1/installments."""
    total_requested_value: Decimal = Field(
        ..., gt=0, max_digits=14, decimal_places=2, description="Total value to finance"
    )
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    requested_duration_months: int = Field(..., ge=1)
    items: list[ItemInput] = Field(..., min_length=1)


class AdminReviewRequest(ApiModel):
    """Request body for PUT /v1/installments/{id}/review."""
    sinicar_decision: SinicarDecision
    admin_notes: Optional[str] = None
    allowed_for_suppliers: bool = False

    @field_validator("sinicar_decision")
    @classmethod
    def decision_must_be_a_verdict(cls, value: SinicarDecision) -> SinicarDecision:
        if value is SinicarDecision.PENDING:
            raise ValueError("sinicarDecision must be APPROVED_FULL, APPROVED_PARTIAL or REJECTED")
        return value


class ForwardToSuppliersRequest(ApiModel):
    """Request body for PUT /v1/installments/{id}/forward."""
    supplier_ids: list[str] = Field(..., min_length=1)


class CreateOfferRequest(ApiModel):
    """Request body for POST /v1/installments/{id}/offers."""
    source_type: OfferSource = OfferSource.SINICAR
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    type: OfferType = OfferType.FULL
    items_approved: Optional[list[ApprovedItem]] = None
    total_approved_value: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    schedule: Optional[list[ScheduleEntry]] = Field(default=None, min_length=1)
    notes: Optional[str] = None


class OfferDecisionRequest(ApiModel):
    """Request body for PUT /v1/installments/offers/{offer_id}/response."""
    action: Literal["accept", "reject"]
    reason: Optional[str] = None

    @property
    def accept(self) -> bool:
        return self.action == "accept"


class CancelRequest(ApiModel):
    reason: Optional[str] = None


class CloseRequest(ApiModel):
    reason: str = Field(..., min_length=1)


# =============================================================================
# QUERIES
# =============================================================================

class InstallmentFilters(ApiModel):
    """Filters for listing installment requests."""
    status: Optional[InstallmentStatus] = None
    customer_id: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    min_value: Optional[Decimal] = None
    max_value: Optional[Decimal] = None


class Pagination(ApiModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1)
    sort_by: Literal["created_at", "updated_at", "total_requested_value", "status"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


# =============================================================================
# RESPONSES
# =============================================================================

class ItemResponse(ApiModel):
    id: str
    part_number: str
    part_name: Optional[str] = None
    quantity: int
    estimated_price: Decimal


class OfferResponse(ApiModel):
    """A financing offer against a request."""
    id: str
    request_id: str
    source_type: OfferSource
    supplier_id: Optional[str] = None
    supplier_name: Optional[str] = None
    type: OfferType
    items_approved: Optional[list[ApprovedItem]] = None
    total_approved_value: Decimal
    schedule: list[ScheduleEntry]
    notes: Optional[str] = None
    created_by: Optional[str] = None
    status: OfferStatus
    response_reason: Optional[str] = None
    responded_at: Optional[datetime] = None
    created_at: datetime


class InstallmentRequestSummary(ApiModel):
    """A request without nested items or offers."""
    id: str
    customer_id: str
    customer_name: Optional[str] = None
    total_requested_value: Decimal
    payment_frequency: PaymentFrequency
    requested_duration_months: int
    status: InstallmentStatus
    sinicar_decision: SinicarDecision
    admin_notes: Optional[str] = None
    allowed_for_suppliers: bool
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    forwarded_to_supplier_ids: list[str] = []
    accepted_offer_id: Optional[str] = None
    closed_reason: Optional[str] = None
    closed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class InstallmentRequestResponse(InstallmentRequestSummary):
    """A request with its items and negotiation history."""
    items: list[ItemResponse] = []
    offers: list[OfferResponse] = []


class RequestPage(ApiModel):
    data: list[InstallmentRequestResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class OfferDecisionResponse(ApiModel):
    """Result of a customer's accept/reject: the offer and its request."""
    offer: OfferResponse
    request: InstallmentRequestSummary


class StatsResponse(ApiModel):
    total: int
    pending: int
    active: int
    completed: int
    cancelled: int
    total_value: Decimal


class SettingsSchema(ApiModel):
    """Global installment policy."""
    enable_installments: bool
    min_installment_value: Decimal
    max_installment_value: Decimal
    min_duration_months: int
    max_duration_months: int
    allow_supplier_offers: bool


class SettingsUpdate(ApiModel):
    """Partial update of the global installment policy."""
    enable_installments: Optional[bool] = None
    min_installment_value: Optional[Decimal] = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    max_installment_value: Optional[Decimal] = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    min_duration_months: Optional[int] = Field(default=None, ge=1)
    max_duration_months: Optional[int] = Field(default=None, ge=1)
    allow_supplier_offers: Optional[bool] = None
