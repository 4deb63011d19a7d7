"""
Coupon redemption tracker.

The redemption count is derived from order_coupons: an association counts
while its order is neither cancelled nor refunded. Closing an order therefore
gives the redemption back without deleting the audit row. The coupon row is
locked for the check-and-insert so concurrent orders cannot overshoot the
usage limit.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import CouponExhausted, CouponExpired, NotFound
from .models import Coupon, DiscountType, Order, OrderCoupon, OrderStatus
from .money import to_money

logger = logging.getLogger(__name__)

RELEASED_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back naive; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def find_coupon(db: Session, code: str, lock: bool = False) -> Coupon:
    stmt = select(Coupon).where(Coupon.code == code)
    if lock:
        stmt = stmt.with_for_update()
    coupon = db.execute(stmt).scalar_one_or_none()
    if coupon is None:
        raise NotFound("Coupon", code)
    return coupon


def redemption_count(db: Session, coupon_id: int) -> int:
    return db.execute(
        select(func.count())
        .select_from(OrderCoupon)
        .join(Order, Order.id == OrderCoupon.order_id)
        .where(OrderCoupon.coupon_id == coupon_id)
        .where(Order.status.not_in(RELEASED_STATUSES))
    ).scalar_one()


def discount_for(coupon: Coupon, subtotal: Decimal) -> Decimal:
    subtotal = to_money(subtotal)
    if coupon.discount_type == DiscountType.PERCENTAGE:
        amount = subtotal * to_money(coupon.discount_value) / Decimal(100)
    else:
        amount = to_money(coupon.discount_value)
    return to_money(min(amount, subtotal))


def redeem(db: Session, coupon: Coupon, order: Order, now: datetime | None = None) -> bool:
    """
    Attach coupon to order if it is still redeemable.

    Returns False when the order already carries this coupon.
    """
    now = now or datetime.now(timezone.utc)

    # re-read under lock; the caller's copy may predate a concurrent redemption
    locked = db.execute(
        select(Coupon).where(Coupon.id == coupon.id).with_for_update()
    ).scalar_one()

    if not locked.active:
        logger.info("[coupon] INACTIVE code=%s order_id=%s", locked.code, order.id)
        raise CouponExpired(locked.code, reason="inactive")

    expires_at = as_utc(locked.expires_at)
    if expires_at is not None and expires_at <= now:
        logger.info("[coupon] EXPIRED code=%s order_id=%s expires_at=%s", locked.code, order.id, expires_at)
        raise CouponExpired(locked.code)

    already = db.execute(
        select(OrderCoupon).where(OrderCoupon.order_id == order.id, OrderCoupon.coupon_id == locked.id)
    ).scalar_one_or_none()
    if already is not None:
        return False

    if locked.usage_limit is not None:
        used = redemption_count(db, locked.id)
        if used >= locked.usage_limit:
            logger.info(
                "[coupon] EXHAUSTED code=%s order_id=%s used=%s limit=%s",
                locked.code, order.id, used, locked.usage_limit,
            )
            raise CouponExhausted(locked.code, locked.usage_limit)

    db.add(OrderCoupon(order_id=order.id, coupon_id=locked.id))
    db.flush()
    logger.info("[coupon] REDEEMED code=%s order_id=%s", locked.code, order.id)
    return True
