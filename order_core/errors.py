"""
Typed failures raised by the order core.

Every one of these aborts the surrounding transaction; nothing is retried
here, retry policy belongs to the caller.
"""


class OrderCoreError(Exception):
    pass


class NotFound(OrderCoreError):
    def __init__(self, entity: str, key):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key} not found")


class InsufficientStock(OrderCoreError):
    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested={requested}, available={available}"
        )


class InvalidTransition(OrderCoreError):
    def __init__(self, current, target, reason: str | None = None):
        self.current = current
        self.target = target
        self.reason = reason
        msg = f"Cannot move from {_label(current)} to {_label(target)}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class CouponExpired(OrderCoreError):
    """Coupon is past expires_at or switched off."""

    def __init__(self, code: str, reason: str = "expired"):
        self.code = code
        self.reason = reason
        super().__init__(f"Coupon {code} is {reason}")


class CouponExhausted(OrderCoreError):
    def __init__(self, code: str, usage_limit: int):
        self.code = code
        self.usage_limit = usage_limit
        super().__init__(f"Coupon {code} reached its usage limit of {usage_limit}")


class DuplicatePayment(OrderCoreError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Payment reference {reference} already recorded")


class ConstraintViolation(OrderCoreError):
    pass


def _label(value) -> str:
    return getattr(value, "value", value) or "none"
