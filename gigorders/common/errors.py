"""Order domain error taxonomy.

Every error raised by the coordinator derives from `OrderError` and carries the
HTTP status the service surfaces translate it to.
"""


class OrderError(Exception):
    """Base exception for order lifecycle failures."""

    status_code = 500
    error_type = "order_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFound(OrderError):
    """Referenced order, gig or profile does not exist."""

    status_code = 404
    error_type = "not_found"


class NotAvailable(OrderError):
    """Gig exists but is not currently orderable."""

    status_code = 409
    error_type = "not_available"


class InvalidPackage(OrderError):
    """Requested package is not in the gig's price list."""

    status_code = 400
    error_type = "invalid_package"


class InvalidTransition(OrderError):
    """Requested status edge is not in the state machine."""

    status_code = 409
    error_type = "invalid_transition"

    def __init__(self, current: str, requested: str, message: str | None = None) -> None:
        self.current = current
        self.requested = requested
        super().__init__(message or f"Invalid transition: {current} -> {requested}")


class Forbidden(OrderError):
    """Actor is not a party to the order or may not take this edge."""

    status_code = 403
    error_type = "forbidden"


class Conflict(OrderError):
    """A concurrent transaction changed the order first."""

    status_code = 409
    error_type = "conflict"


class DeliveryDegraded(OrderError):
    """Best-effort notification phase failed; logged, never raised to callers."""

    error_type = "delivery_degraded"
