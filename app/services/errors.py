"""
Order Error Taxonomy

Every failure the lifecycle engine can report. Handlers catch
``OrderError`` and turn it into an acknowledgement, an ``error`` event or
an HTTP response; nothing below this layer leaks across the socket as an
unstructured exception.
"""

from typing import Optional


class OrderError(Exception):
    """Base class for engine-level failures."""

    code = "OrderError"
    http_status = 400
    default_message = "Order operation failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFoundError(OrderError):
    code = "NotFound"
    http_status = 404
    default_message = "Order not found"


class ForbiddenError(OrderError):
    code = "Forbidden"
    http_status = 403
    default_message = "Not authorized"


class OrderBeingPreparedError(ForbiddenError):
    """A guest tried to change its own order after the kitchen started it."""
    code = "OrderBeingPrepared"
    default_message = "Order is being prepared and can no longer be changed"


class InvalidTransitionError(OrderError):
    code = "InvalidTransition"
    http_status = 409
    default_message = "Invalid status transition"


class ImmutableOrderError(OrderError):
    code = "Immutable"
    http_status = 409
    default_message = "Collected orders cannot be edited"


class EmptyOrderError(OrderError):
    code = "EmptyOrder"
    http_status = 422
    default_message = "An order needs at least one item"


class InvalidItemsError(OrderError):
    code = "InvalidItems"
    http_status = 422
    default_message = "Order references unknown menu items"


class ConflictError(OrderError):
    code = "Conflict"
    http_status = 409
    default_message = "Order was modified concurrently, reload and retry"


class StoreUnavailableError(OrderError):
    code = "StoreUnavailable"
    http_status = 503
    default_message = "Order store unavailable"


class SequenceExhaustionError(StoreUnavailableError):
    """The order number counter could not be incremented."""
    code = "SequenceExhaustion"
    default_message = "Could not allocate an order number"
