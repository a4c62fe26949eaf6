# Overview: Domain error taxonomy shared by the payment lifecycle services and routes.

"""
Error taxonomy

- UnknownPayment: webhook points at a payment we never created. Acknowledge, never retry.
- GatewayUnavailable: transient outbound failure (network, timeout, 5xx). Caller may retry.
- GatewayRejected: the gateway refused the charge request (4xx). Not retryable as-is.
- InvalidOrderState / OrderNotFound: client asked for something the order is not eligible for.
- TransitionPreconditionFailed: internal only; the state machine turns it into a no-op.
- InsufficientStock: booking a sale would drive available stock negative.
- InvalidSignature: webhook signature did not match the server key.
- StorageFailure: a transaction could not commit; surfaced as 5xx so the sender retries.
"""


class OrderPayError(Exception):
    """Base class for payment lifecycle errors."""
    pass


class UnknownPayment(OrderPayError):
    def __init__(self, external_order_id: str | None):
        self.external_order_id = external_order_id
        super().__init__(f"Payment not found for external order id {external_order_id!r}")


class GatewayUnavailable(OrderPayError):
    pass


class GatewayRejected(OrderPayError):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class InvalidOrderState(OrderPayError):
    pass


class OrderNotFound(OrderPayError):
    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class TransitionPreconditionFailed(OrderPayError):
    def __init__(self, order_id, event: str, reason: str):
        self.order_id = order_id
        self.event = event
        self.reason = reason
        super().__init__(f"Order {order_id}: {event} not applicable ({reason})")


class InsufficientStock(OrderPayError):
    def __init__(self, variant_id, available: int, requested: int):
        self.variant_id = variant_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Variant {variant_id} has {available} available, cannot book {requested}"
        )


class InvalidSignature(OrderPayError):
    pass


class StorageFailure(OrderPayError):
    pass
