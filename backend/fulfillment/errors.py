"""
Error taxonomy for the fulfillment pipeline.

Everything raised inside a unit of work aborts the transaction. The
callback pipelines translate these into CallbackResult objects and never
re-raise into the caller.
"""

from typing import Any, Dict, List, Optional


class FulfillmentError(Exception):
    """Base class for all pipeline errors."""
    error_type = "FulfillmentError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(FulfillmentError):
    """Malformed payload, missing fields or bad signature. No mutation."""
    error_type = "ValidationError"

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.missing_fields = missing_fields or []
        super().__init__(message, details)


class NotFoundError(FulfillmentError):
    error_type = "NotFoundError"


class DuplicateError(FulfillmentError):
    """Already paid / already processed. Idempotent no-op for the sender."""
    error_type = "DuplicateError"


class ForwardBlockedError(DuplicateError):
    """Order already carries a provider reference; forwarding again is refused."""
    error_type = "ForwardBlocked"

    def __init__(self, order_id: str, reference_id: str):
        self.order_id = order_id
        self.reference_id = reference_id
        super().__init__(
            f"Order {order_id} already forwarded with reference {reference_id}",
            {"order_id": order_id, "reference_id": reference_id}
        )


class InsufficientBalanceError(FulfillmentError):
    error_type = "InsufficientBalance"

    def __init__(self, username: str, amount: float):
        self.username = username
        self.amount = amount
        super().__init__(
            f"Insufficient balance for {username} to pay {amount}",
            {"username": username, "amount": amount}
        )


class InvariantViolationError(FulfillmentError):
    """A business invariant would be broken; logged, never mutates balances."""
    error_type = "InvariantViolation"

    def __init__(self, violation_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.violation_type = violation_type
        super().__init__(message, details)


class GatewayError(FulfillmentError):
    """Payment gateway call failed or answered with a non-success code."""
    error_type = "UpstreamRejected"
