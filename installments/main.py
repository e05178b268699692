"""
Installment Negotiation Service

A FastAPI-based service that turns a customer's request to pay for parts in
installments into an accepted payment contract.

Negotiation flow:
-----------------
1. The customer submits a request; it is checked against the global
   installment policy and waits for the internal reviewer (SINICAR)
2. The reviewer approves (fully or partially) or rejects it, and decides
   whether external suppliers may make offers
3. Approved requests can be forwarded to suppliers
4. The reviewer and suppliers make offers; offers without an explicit
   payment schedule get one generated
5. The customer accepts an offer (the contract becomes active) or rejects
   it (the request waits for further offers)
6. Administrators complete active contracts or close requests

Authentication, pricing and notification delivery live in other services.
The caller's identity arrives in X-Actor-* headers set by the auth layer.
"""
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from installments.api import router
from installments.config import settings
from installments.database import engine, Base
from installments.errors import InstallmentError
from installments.logging import (
    configure_logging,
    get_logger,
    set_request_context,
    clear_request_context,
    generate_request_id,
)
from installments import metrics as service_metrics

# Configure structured logging
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "service_starting",
        service_name=settings.service_name,
        notification_webhook_url=settings.notification_webhook_url,
    )

    # Create tables if they don't exist (in production, use migrations)
    Base.metadata.create_all(bind=engine)

    logger.info("service_started", service_name=settings.service_name)

    yield

    logger.info("service_stopping", service_name=settings.service_name)


app = FastAPI(
    title="Installment Negotiation Service",
    description="Negotiates installment financing between customers, the internal reviewer and suppliers",
    version="0.1.0",
    lifespan=lifespan,
)


UNTRACED_PATHS = frozenset({"/health", "/metrics"})


def _endpoint_label(request: Request) -> str:
    """Route template (e.g. /v1/installments/{request_id}) so ids don't explode label cardinality."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


@app.middleware("http")
async def trace_requests(request: Request, call_next):
    """
    Bind a request id, log the request outcome and record HTTP metrics.

    The request id comes from X-Request-ID when the caller sent one and is
    echoed back on the response.
    """
    if request.url.path in UNTRACED_PATHS:
        return await call_next(request)

    request_id = request.headers.get("X-Request-ID") or generate_request_id()
    request.state.request_id = request_id
    set_request_context(request_id)

    log = logger.bind(method=request.method, path=request.url.path)
    log.info("request_received")

    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception as e:
        log.error("request_failed", error=str(e))
        raise
    finally:
        elapsed = time.perf_counter() - started
        log.info("request_completed", status_code=status_code, duration_ms=round(elapsed * 1000, 2))
        service_metrics.record_http_request(request.method, _endpoint_label(request), status_code, elapsed)
        clear_request_context()


@app.exception_handler(InstallmentError)
async def installment_error_handler(request: Request, exc: InstallmentError):
    """Render domain errors as {code, detail, ...context} with the error's status."""
    logger.warning(
        "installment_error",
        error_code=exc.code,
        status_code=exc.status_code,
        detail=exc.detail,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Request-ID": getattr(request.state, "request_id", "unknown")},
    )


# Include API routes
app.include_router(router)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "ok", "service": settings.service_name}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
