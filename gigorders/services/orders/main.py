"""HTTP surface for the order lifecycle coordinator.

Authentication happens upstream; callers forward the acting user in
`x-user-id` and the shared service key in `x-api-key`.
"""

from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from gigorders.common.config import settings
from gigorders.common.db import SessionLocal
from gigorders.common.errors import OrderError
from gigorders.common.logging import configure_logging, log_startup_config, trace_id_ctx, user_id_ctx
from gigorders.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from gigorders.common.tracing import instrument_app, setup_tracing
from gigorders.services.notification.queue import RedisDeliveryQueue
from gigorders.services.orders.schemas import (
    CancelRequest,
    ExtensionRequest,
    OrderCreateRequest,
    OrderListResponse,
    OrderOptions,
    OrderResponse,
    StatusHistoryResponse,
    TransitionRequest,
)
from gigorders.services.orders.service import OrderCoordinator

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "REDIS_URL", "DELIVERY_QUEUE_NAME", "API_KEY"],
)
service = OrderCoordinator(SessionLocal, RedisDeliveryQueue())

app = FastAPI(title="Gig Orders Service")
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(OrderError)
async def order_error_handler(_: Request, exc: OrderError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_type, "detail": exc.message},
    )


def acting_user(
    x_api_key: str | None = Header(default=None),
    x_user_id: int | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
) -> int:
    """Check the service key and bind correlation ids for this request."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="missing x-user-id")
    trace_id_ctx.set(x_trace_id or str(uuid4()))
    user_id_ctx.set(str(x_user_id))
    return x_user_id


def request_origin(request: Request) -> tuple[str | None, str]:
    """Client address (first `x-forwarded-for` hop when proxied) and order source from the user agent."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip() or None
    else:
        client_ip = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent", "")
    return client_ip, "MOBILE" if "Mobile" in user_agent else "WEB"


@app.post("/orders", response_model=OrderResponse, status_code=201)
def create_order(req: OrderCreateRequest, request: Request, user_id: int = Depends(acting_user)):
    """Place an order against a gig package."""

    client_ip, order_source = request_origin(request)
    options = OrderOptions(
        **req.model_dump(exclude={"gig_id", "package"}),
        client_ip=client_ip,
        order_source=order_source,
    )
    order = service.create(user_id, req.gig_id, req.package, options)
    return OrderResponse.model_validate(order)


@app.post("/orders/{order_id}/transitions", response_model=OrderResponse)
def transition_order(order_id: int, req: TransitionRequest, user_id: int = Depends(acting_user)):
    """Move an order to `req.status` if the state machine allows it."""

    order = service.transition(order_id, user_id, req.status, req.reason)
    return OrderResponse.model_validate(order)


@app.post("/orders/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(order_id: int, req: CancelRequest, user_id: int = Depends(acting_user)):
    order = service.cancel(order_id, user_id, req.reason)
    return OrderResponse.model_validate(order)


@app.post("/orders/{order_id}/extensions", response_model=OrderResponse)
def extend_order(order_id: int, req: ExtensionRequest, user_id: int = Depends(acting_user)):
    order = service.extend_deadline(order_id, user_id, req.reason, req.days)
    return OrderResponse.model_validate(order)


@app.get("/orders/{order_id}", response_model=OrderResponse)
def get_order(order_id: int, user_id: int = Depends(acting_user)):
    return OrderResponse.model_validate(service.get_order(order_id, viewer_id=user_id))


@app.get("/orders/{order_id}/history", response_model=list[StatusHistoryResponse])
def get_order_history(order_id: int, user_id: int = Depends(acting_user)):
    return [StatusHistoryResponse.model_validate(row) for row in service.get_history(order_id, viewer_id=user_id)]


@app.get("/orders", response_model=OrderListResponse)
def list_orders(
    role: str = "buyer",
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
    user_id: int = Depends(acting_user),
):
    """List the caller's orders as buyer, or their work queue as provider."""

    limit = max(1, min(limit, 100))
    if role == "provider":
        statuses = status.split(",") if status else None
        orders, total = service.list_provider_orders(user_id, statuses, page, limit)
    elif role == "buyer":
        orders, total = service.list_buyer_orders(user_id, status, page, limit)
    else:
        raise HTTPException(status_code=400, detail="role must be buyer or provider")
    return OrderListResponse(
        orders=[OrderResponse.model_validate(order) for order in orders],
        total=total,
        page=page,
        limit=limit,
        total_pages=-(-total // limit),
    )


@app.get("/reconciliation")
def reconciliation(fix: bool = False, x_api_key: str | None = Header(default=None)):
    """Compare provider active-order counters and timelines with live order rows."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")
    return service.reconcile(fix=fix)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
