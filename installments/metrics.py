"""
Prometheus Metrics for the Installment Negotiation Service.

Everything registered here is served by GET /metrics. Business metrics follow
the negotiation (requests submitted, policy rejections, offers, customer
answers, status changes); technical metrics cover engine latency, lost
compare-and-set races, webhook delivery and plain HTTP traffic.
"""
from decimal import Decimal

from prometheus_client import Counter, Histogram, Info

# =============================================================================
# SERVICE INFO
# =============================================================================

SERVICE_INFO = Info(
    "installment_service",
    "Service information"
)
SERVICE_INFO.info({
    "version": "0.1.0",
    "service": "installment-negotiation",
})

# =============================================================================
# BUSINESS IMPACT METRICS
# =============================================================================

# Counter: Installment requests accepted into review
REQUESTS_CREATED = Counter(
    "installment_requests_created_total",
    "Installment requests submitted and persisted",
    ["frequency"]  # WEEKLY, MONTHLY
)

# Counter: Requests refused by policy at creation
POLICY_REJECTIONS = Counter(
    "installment_policy_rejections_total",
    "Installment requests refused by policy checks",
    ["reason"]  # feature_disabled, value_out_of_range, duration_out_of_range
)

# Histogram: Requested values distribution
REQUESTED_VALUE = Histogram(
    "installment_requested_value",
    "Distribution of requested installment values",
    buckets=[1000, 2500, 5000, 10000, 20000, 35000, 50000, 100000]
)

# Counter: Request status transitions by event
STATUS_TRANSITIONS = Counter(
    "installment_status_transitions_total",
    "Installment request status transitions",
    ["transition", "to_status"]
)

# Counter: Offers created by source
OFFERS_CREATED = Counter(
    "installment_offers_created_total",
    "Installment offers created",
    ["source_type", "generated_schedule"]  # generated_schedule: "true"/"false"
)

# Counter: Customer responses to offers
OFFER_RESPONSES = Counter(
    "installment_offer_responses_total",
    "Customer responses to installment offers",
    ["outcome", "source_type"]  # outcome: accepted, rejected
)

# =============================================================================
# TECHNICAL METRICS
# =============================================================================

# Counter: Attempted moves the state machine refused
INVALID_TRANSITIONS = Counter(
    "installment_invalid_transitions_total",
    "State machine violations reported to callers",
    ["operation"]
)

# Histogram: Engine operation latency
OPERATION_LATENCY = Histogram(
    "installment_operation_latency_seconds",
    "Time to run a negotiation engine operation",
    ["operation"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

# Histogram: Webhook delivery latency
WEBHOOK_LATENCY = Histogram(
    "installment_webhook_latency_seconds",
    "Time to deliver a negotiation event webhook",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Counter: Webhook delivery outcomes
WEBHOOK_DELIVERY = Counter(
    "installment_webhook_delivery_total",
    "Webhook delivery attempts",
    ["status"]  # success, failed
)

# Counter: Webhook retries
WEBHOOK_RETRY = Counter(
    "installment_webhook_retry_total",
    "Total webhook retry attempts"
)

# =============================================================================
# HTTP METRICS (Standard)
# =============================================================================

HTTP_REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"]
)

HTTP_REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def record_request_created(frequency: str, value: Decimal) -> None:
    """Record a persisted installment request."""
    REQUESTS_CREATED.labels(frequency=getattr(frequency, "value", frequency)).inc()
    REQUESTED_VALUE.observe(float(value))


def record_policy_rejection(reason: str) -> None:
    POLICY_REJECTIONS.labels(reason=reason).inc()


def record_transition(transition: str, to_status: str) -> None:
    """Record a request status transition."""
    STATUS_TRANSITIONS.labels(
        transition=getattr(transition, "value", transition),
        to_status=getattr(to_status, "value", to_status),
    ).inc()


def record_offer_created(source_type: str, generated_schedule: bool) -> None:
    OFFERS_CREATED.labels(
        source_type=getattr(source_type, "value", source_type),
        generated_schedule="true" if generated_schedule else "false",
    ).inc()


def record_offer_response(accepted: bool, source_type: str) -> None:
    OFFER_RESPONSES.labels(
        outcome="accepted" if accepted else "rejected",
        source_type=getattr(source_type, "value", source_type),
    ).inc()


def record_invalid_transition(operation: str) -> None:
    INVALID_TRANSITIONS.labels(operation=operation).inc()


def record_operation_latency(operation: str, latency_seconds: float) -> None:
    OPERATION_LATENCY.labels(operation=operation).observe(latency_seconds)


def record_webhook_delivery(success: bool, latency_seconds: float, is_retry: bool = False) -> None:
    WEBHOOK_LATENCY.observe(latency_seconds)
    WEBHOOK_DELIVERY.labels(status="success" if success else "failed").inc()
    if is_retry:
        WEBHOOK_RETRY.inc()


def record_http_request(method: str, endpoint: str, status: int, latency_seconds: float) -> None:
    HTTP_REQUESTS.labels(method=method, endpoint=endpoint, status=str(status)).inc()
    HTTP_REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(latency_seconds)
