"""API route handlers for the installment negotiation service."""
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from installments.config import settings
from installments.database import get_db
from installments.errors import ForbiddenError
from installments.logging import get_logger, set_request_context
from installments.negotiation.states import InstallmentStatus
from installments.schemas import (
    AdminReviewRequest, CancelRequest, CloseRequest,
    CreateInstallmentRequest, CreateOfferRequest, ForwardToSuppliersRequest,
    InstallmentFilters, InstallmentRequestResponse, InstallmentRequestSummary,
    OfferDecisionRequest, OfferDecisionResponse, OfferResponse,
    Pagination, RequestPage, SettingsSchema, SettingsUpdate, StatsResponse,
)
from installments.services.negotiation import Actor, ActorRole, InstallmentEvent, NegotiationEngine
from installments.services.webhook import WebhookService
from installments.stores.requests import total_pages

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/installments", tags=["installments"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_actor(
    request: Request,
    x_actor_id: str = Header(..., description="Authenticated actor id, set by the auth layer"),
    x_actor_role: ActorRole = Header(..., description="CUSTOMER, ADMIN or SUPPLIER"),
    x_actor_name: Optional[str] = Header(None),
) -> Actor:
    """Identity of the caller, as asserted by the upstream auth layer."""
    request_id = getattr(request.state, "request_id", "unknown")
    set_request_context(request_id, actor_id=x_actor_id)
    return Actor(id=x_actor_id, role=x_actor_role, name=x_actor_name)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role is not ActorRole.ADMIN:
        raise HTTPException(status_code=403, detail="Administrator role required")
    return actor


def require_offer_author(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role not in (ActorRole.ADMIN, ActorRole.SUPPLIER):
        raise HTTPException(status_code=403, detail="Only reviewers and suppliers can create offers")
    return actor


class EventBuffer:
    """Collects engine events during a request; published once the operation succeeded."""

    def __init__(self):
        self.events: list[InstallmentEvent] = []

    def __call__(self, event: InstallmentEvent) -> None:
        self.events.append(event)

    async def publish(self, db: Session) -> None:
        webhook_service = WebhookService(db)
        for event in self.events:
            # Don't fail the request if webhook fails
            try:
                await webhook_service.send_event(event)
            except Exception as e:
                logger.error(
                    "webhook_send_failed",
                    event_type=event.event_type,
                    installment_request_id=event.installment_request_id,
                    error=str(e),
                )
        self.events.clear()


def get_event_buffer() -> EventBuffer:
    return EventBuffer()


def get_engine(
    db: Session = Depends(get_db),
    events: EventBuffer = Depends(get_event_buffer),
) -> NegotiationEngine:
    return NegotiationEngine(db, event_sink=events)


def get_pagination(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    sort_by: Literal["created_at", "updated_at", "total_requested_value", "status"] = Query(
        "created_at", alias="sortBy"
    ),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
) -> Pagination:
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    return Pagination(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)


def _page(rows, total: int, pagination: Pagination) -> RequestPage:
    return RequestPage(
        data=[InstallmentRequestResponse.model_validate(r) for r in rows],
        total=total,
        page=pagination.page,
        limit=pagination.limit,
        total_pages=total_pages(total, pagination.limit),
    )


# =============================================================================
# COLLECTION ROUTES
# =============================================================================

@router.get("", response_model=RequestPage)
async def list_requests(
    status: Optional[InstallmentStatus] = None,
    customer_id: Optional[str] = Query(None, alias="customerId"),
    from_date: Optional[datetime] = Query(None, alias="fromDate"),
    to_date: Optional[datetime] = Query(None, alias="toDate"),
    min_value: Optional[Decimal] = Query(None, alias="minValue"),
    max_value: Optional[Decimal] = Query(None, alias="maxValue"),
    pagination: Pagination = Depends(get_pagination),
    actor: Actor = Depends(require_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    """List installment requests across customers (administrators only)."""
    filters = InstallmentFilters(
        status=status,
        customer_id=customer_id,
        from_date=from_date,
        to_date=to_date,
        min_value=min_value,
        max_value=max_value,
    )
    rows, total = engine.list_requests(filters, pagination)
    return _page(rows, total, pagination)


@router.post("", response_model=InstallmentRequestResponse, status_code=201)
async def create_request(
    body: CreateInstallmentRequest,
    actor: Actor = Depends(get_actor),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    """
    Submit a new installment request.

    The request is checked against the current installment policy
    (feature toggle, value bounds, duration bounds) and stored in
    PENDING_SINICAR_REVIEW.
    """
    request = engine.create(actor, body)
    response = InstallmentRequestResponse.model_validate(request)
    await events.publish(db)
    return response


@router.get("/mine", response_model=RequestPage)
async def list_my_requests(
    pagination: Pagination = Depends(get_pagination),
    actor: Actor = Depends(get_actor),
    engine: NegotiationEngine = Depends(get_engine),
):
    """List the calling customer's own requests."""
    rows, total = engine.list_for_customer(actor.id, pagination)
    return _page(rows, total, pagination)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    actor: Actor = Depends(get_actor),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Request counts by lifecycle bucket; customers only see their own."""
    customer_id = None if actor.role is ActorRole.ADMIN else actor.id
    return engine.get_stats(customer_id)


@router.get("/settings", response_model=SettingsSchema)
async def get_settings(
    actor: Actor = Depends(require_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    return SettingsSchema.model_validate(engine.get_settings())


@router.put("/settings", response_model=SettingsSchema)
async def update_settings(
    body: SettingsUpdate,
    actor: Actor = Depends(require_admin),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Partially update the global installment policy."""
    logger.info("settings_update_requested", **body.model_dump(exclude_none=True, mode="json"))
    return SettingsSchema.model_validate(engine.update_settings(body))


@router.put("/offers/{offer_id}/response", response_model=OfferDecisionResponse)
async def respond_to_offer(
    offer_id: str,
    body: OfferDecisionRequest,
    actor: Actor = Depends(get_actor),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    """
    Accept or reject an offer.

    Accepting activates the contract; rejecting reopens the request to
    further offers. Only the customer who owns the request may answer.
    """
    offer, request = engine.respond_to_offer(offer_id, actor, body)
    response = OfferDecisionResponse(
        offer=OfferResponse.model_validate(offer),
        request=InstallmentRequestSummary.model_validate(request),
    )
    await events.publish(db)
    return response


# =============================================================================
# SINGLE REQUEST ROUTES
# =============================================================================

@router.get("/{request_id}", response_model=InstallmentRequestResponse)
async def get_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    engine: NegotiationEngine = Depends(get_engine),
):
    """Fetch a request with its items and offers."""
    request = engine.get_by_id(request_id)
    if actor.role is ActorRole.CUSTOMER and request.customer_id != actor.id:
        raise ForbiddenError(actor.id, request_id)
    return InstallmentRequestResponse.model_validate(request)


@router.put("/{request_id}/review", response_model=InstallmentRequestResponse)
async def review_request(
    request_id: str,
    body: AdminReviewRequest,
    actor: Actor = Depends(require_admin),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    """Record the reviewer's decision on a pending request."""
    request = engine.admin_review(request_id, actor, body)
    response = InstallmentRequestResponse.model_validate(request)
    await events.publish(db)
    return response


@router.put("/{request_id}/forward", response_model=InstallmentRequestResponse)
async def forward_request(
    request_id: str,
    body: ForwardToSuppliersRequest,
    actor: Actor = Depends(require_admin),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    """Route a reviewed request to the given suppliers."""
    request = engine.forward_to_suppliers(request_id, body, actor)
    response = InstallmentRequestResponse.model_validate(request)
    await events.publish(db)
    return response


@router.get("/{request_id}/offers", response_model=list[OfferResponse])
async def list_offers(
    request_id: str,
    actor: Actor = Depends(get_actor),
    engine: NegotiationEngine = Depends(get_engine),
):
    """All offers made against a request, newest first."""
    if actor.role is ActorRole.CUSTOMER:
        request = engine.get_by_id(request_id)
        if request.customer_id != actor.id:
            raise ForbiddenError(actor.id, request_id)
    return [OfferResponse.model_validate(o) for o in engine.list_offers(request_id)]


@router.post("/{request_id}/offers", response_model=OfferResponse, status_code=201)
async def create_offer(
    request_id: str,
    body: CreateOfferRequest,
    actor: Actor = Depends(require_offer_author),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    """
    Make a financing offer on a request.

    If no schedule is supplied, one is generated from the request's
    duration and frequency.
    """
    offer = engine.create_offer(request_id, actor, body)
    response = OfferResponse.model_validate(offer)
    await events.publish(db)
    return response


@router.put("/{request_id}/cancel", response_model=InstallmentRequestResponse)
async def cancel_request(
    request_id: str,
    body: CancelRequest,
    actor: Actor = Depends(get_actor),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    """Cancel a request (owning customer only)."""
    request = engine.cancel(request_id, actor, body.reason)
    response = InstallmentRequestResponse.model_validate(request)
    await events.publish(db)
    return response


@router.put("/{request_id}/close", response_model=InstallmentRequestResponse)
async def close_request(
    request_id: str,
    body: CloseRequest,
    actor: Actor = Depends(require_admin),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    request = engine.close(request_id, body.reason, actor)
    response = InstallmentRequestResponse.model_validate(request)
    await events.publish(db)
    return response


@router.put("/{request_id}/complete", response_model=InstallmentRequestResponse)
async def complete_request(
    request_id: str,
    actor: Actor = Depends(require_admin),
    engine: NegotiationEngine = Depends(get_engine),
    events: EventBuffer = Depends(get_event_buffer),
    db: Session = Depends(get_db),
):
    request = engine.complete(request_id, actor)
    response = InstallmentRequestResponse.model_validate(request)
    await events.publish(db)
    return response
