"""
Payment reconciliation.

Payments are append-only facts about money movement against an order:
  pending -> completed | failed    (decided by the gateway)
  refunded                         (a separate row; money going back out)

A completed payment is never edited. Whether an order is paid in full is
derived from the completed rows every time it is asked.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol

import httpx
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import get_settings
from .errors import ConstraintViolation, DuplicatePayment, InvalidTransition, NotFound
from .events import emit
from .models import Order, OrderStatus, Payment, PaymentMethod, PaymentStatus
from .money import to_money

logger = logging.getLogger(__name__)

GATEWAY_OUTCOMES = (PaymentStatus.COMPLETED, PaymentStatus.FAILED)
CLOSED_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


def _sum_by_status(db: Session, order_id: int, status: PaymentStatus) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0))
        .where(Payment.order_id == order_id)
        .where(Payment.status == status)
    ).scalar_one()
    return to_money(total)


def amount_paid(db: Session, order_id: int) -> Decimal:
    return _sum_by_status(db, order_id, PaymentStatus.COMPLETED)


def amount_refunded(db: Session, order_id: int) -> Decimal:
    return _sum_by_status(db, order_id, PaymentStatus.REFUNDED)


def is_paid_in_full(db: Session, order: Order) -> bool:
    return amount_paid(db, order.id) >= to_money(order.total)


def has_completed_payment(db: Session, order_id: int) -> bool:
    row = db.execute(
        select(Payment.id)
        .where(Payment.order_id == order_id)
        .where(Payment.status == PaymentStatus.COMPLETED)
        .limit(1)
    ).first()
    return row is not None


def get_payment(db: Session, reference: str, lock: bool = False) -> Payment:
    stmt = select(Payment).where(Payment.payment_reference == reference)
    if lock:
        stmt = stmt.with_for_update()
    payment = db.execute(stmt).scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment", reference)
    return payment


def _positive_amount(amount) -> Decimal:
    amount = to_money(amount)
    if amount <= 0:
        raise ConstraintViolation(f"Payment amount must be positive, got {amount}")
    return amount


def _method(method) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError:
        raise ConstraintViolation(f"Unknown payment method {method!r}") from None


def _insert_payment(db: Session, payment: Payment) -> Payment:
    if db.execute(
        select(Payment.id).where(Payment.payment_reference == payment.payment_reference)
    ).first() is not None:
        raise DuplicatePayment(payment.payment_reference)

    # a concurrent insert of the same reference still trips the unique key
    try:
        with db.begin_nested():
            db.add(payment)
            db.flush()
    except IntegrityError:
        raise DuplicatePayment(payment.payment_reference) from None
    return payment


def record_payment(
    db: Session,
    order_id: int,
    amount,
    method,
    reference: str,
    currency: str | None = None,
) -> Payment:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    if order.status in CLOSED_ORDER_STATUSES:
        raise ConstraintViolation(f"Order {order_id} is {order.status.value}; payments are closed")

    payment = _insert_payment(db, Payment(
        order_id=order.id,
        payment_reference=reference,
        method=_method(method),
        amount=_positive_amount(amount),
        currency=currency or get_settings().DEFAULT_CURRENCY,
        status=PaymentStatus.PENDING,
    ))
    logger.info(
        "[payment] RECORDED order_id=%s reference=%s amount=%s", order.id, reference, payment.amount
    )
    return payment


def confirm(db: Session, reference: str, outcome, now: datetime | None = None) -> Payment:
    """
    Apply the gateway's verdict for one payment.

    Replaying the same verdict is a no-op; a contradicting verdict is refused.
    """
    try:
        outcome = PaymentStatus(outcome)
    except ValueError:
        raise ConstraintViolation(f"Unknown gateway outcome {outcome!r}") from None
    if outcome not in GATEWAY_OUTCOMES:
        raise ConstraintViolation(f"Gateway outcome must be completed or failed, got {outcome.value}")

    payment = get_payment(db, reference, lock=True)
    if payment.status == outcome:
        logger.info("[payment] duplicate confirmation reference=%s status=%s", reference, outcome.value)
        return payment
    if payment.status != PaymentStatus.PENDING:
        raise InvalidTransition(payment.status, outcome, reason=f"payment {reference} already settled")

    payment.status = outcome
    if outcome == PaymentStatus.COMPLETED:
        payment.paid_at = now or datetime.now(timezone.utc)
    db.flush()

    emit(db, f"payment.{outcome.value}", {
        "order_id": payment.order_id,
        "payment_reference": reference,
        "amount": str(to_money(payment.amount)),
    })
    logger.info("[payment] %s order_id=%s reference=%s", outcome.value.upper(), payment.order_id, reference)
    return payment


def refund(
    db: Session,
    order_id: int,
    amount,
    reference: str,
    method=None,
    now: datetime | None = None,
) -> Payment:
    order = db.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
    if order is None:
        raise NotFound("Order", order_id)

    amount = _positive_amount(amount)
    refundable = amount_paid(db, order.id) - amount_refunded(db, order.id)
    if amount > refundable:
        raise ConstraintViolation(
            f"Refund of {amount} exceeds refundable balance {refundable} on order {order.id}"
        )

    if method is None:
        method = db.execute(
            select(Payment.method)
            .where(Payment.order_id == order.id)
            .where(Payment.status == PaymentStatus.COMPLETED)
            .order_by(Payment.id.desc())
            .limit(1)
        ).scalar_one()

    payment = _insert_payment(db, Payment(
        order_id=order.id,
        payment_reference=reference,
        method=_method(method),
        amount=amount,
        currency=get_settings().DEFAULT_CURRENCY,
        status=PaymentStatus.REFUNDED,
        paid_at=now or datetime.now(timezone.utc),
    ))
    emit(db, "payment.refunded", {
        "order_id": order.id,
        "payment_reference": reference,
        "amount": str(amount),
    })
    logger.info("[payment] REFUNDED order_id=%s reference=%s amount=%s", order.id, reference, amount)
    return payment


class PaymentGateway(Protocol):
    def capture(self, payment: Payment) -> PaymentStatus:
        ...


class HttpPaymentGateway:
    """Synchronous capture against an external gateway over HTTP."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None, client: httpx.Client | None = None):
        settings = get_settings()
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_URL).rstrip("/")
        self.client = client or httpx.Client(
            timeout=timeout if timeout is not None else settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS
        )

    def capture(self, payment: Payment) -> PaymentStatus:
        r = self.client.post(
            f"{self.base_url}/payments/capture",
            json={
                "payment_reference": payment.payment_reference,
                "amount": str(to_money(payment.amount)),
                "currency": payment.currency,
                "method": payment.method.value,
            },
        )
        r.raise_for_status()
        return PaymentStatus(r.json()["status"])

    def close(self):
        self.client.close()


def submit(db: Session, gateway: PaymentGateway, payment: Payment) -> Payment | None:
    """
    Ask the gateway to capture a pending payment and apply the answer.

    When the gateway cannot be reached or does not answer in time the payment
    stays pending and None is returned.
    """
    if payment.status != PaymentStatus.PENDING:
        raise InvalidTransition(payment.status, PaymentStatus.COMPLETED, reason="payment is not pending")

    try:
        outcome = gateway.capture(payment)
    except httpx.TimeoutException:
        logger.warning("[payment] gateway timeout reference=%s; left pending", payment.payment_reference)
        return None
    except httpx.HTTPError as e:
        logger.warning(
            "[payment] gateway error reference=%s: %s; left pending", payment.payment_reference, e
        )
        return None

    if outcome == PaymentStatus.PENDING:
        logger.info("[payment] gateway still processing reference=%s", payment.payment_reference)
        return None
    return confirm(db, payment.payment_reference, outcome)
