import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import coupons, inventory
from .database import translate_integrity_error
from .errors import ConstraintViolation, NotFound
from .events import emit
from .models import Address, Customer, Order, OrderItem, OrderStatus, Product, StatusHistoryEntry
from .money import to_money
from .schemas import OrderCreate

logger = logging.getLogger(__name__)


def compute_totals(subtotal, shipping_cost, discount_amount) -> Decimal:
    total = to_money(subtotal) + to_money(shipping_cost) - to_money(discount_amount)
    if total < 0:
        raise ConstraintViolation(
            f"Order total would be negative: subtotal={subtotal} "
            f"shipping={shipping_cost} discount={discount_amount}"
        )
    return total


def new_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


def _address_of(db: Session, address_id: int, customer_id: int) -> Address:
    address = db.get(Address, address_id)
    if address is None or address.customer_id != customer_id:
        raise NotFound("Address", address_id)
    return address


def place_order(db: Session, order_data: OrderCreate, now: datetime | None = None) -> Order:
    """
    In one transaction:
    - snapshot prices into order_items
    - reserve stock for every line
    - redeem coupons and settle the totals
    - queue order.placed in the outbox
    """
    now = now or datetime.now(timezone.utc)

    customer = db.get(Customer, order_data.customer_id)
    if customer is None:
        raise NotFound("Customer", order_data.customer_id)
    _address_of(db, order_data.billing_address_id, customer.user_id)
    _address_of(db, order_data.shipping_address_id, customer.user_id)

    lines = inventory.merge_lines((i.product_id, i.quantity) for i in order_data.items)

    products = {}
    for product_id in lines:
        product = db.get(Product, product_id)
        if product is None or not product.active:
            raise NotFound("Product", product_id)
        products[product_id] = product

    subtotal = Decimal("0.00")
    for product_id, qty in lines.items():
        subtotal += to_money(products[product_id].price) * qty
    shipping_cost = to_money(order_data.shipping_cost)

    order = Order(
        order_number=new_order_number(now),
        customer_id=customer.user_id,
        billing_address_id=order_data.billing_address_id,
        shipping_address_id=order_data.shipping_address_id,
        status=OrderStatus.PENDING,
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        discount_amount=Decimal("0.00"),
        total=subtotal + shipping_cost,
        placed_at=now,
    )
    db.add(order)
    with translate_integrity_error(f"order {order.order_number}"):
        db.flush()

    for product_id, qty in lines.items():
        unit_price = to_money(products[product_id].price)
        db.add(OrderItem(
            order_id=order.id,
            product_id=product_id,
            quantity=qty,
            unit_price=unit_price,
            line_total=unit_price * qty,
        ))

    inventory.reserve(db, lines, order_id=order.id)

    discount = to_money(order_data.discount_amount)
    for code in dict.fromkeys(order_data.coupon_codes):
        coupon = coupons.find_coupon(db, code)
        if coupons.redeem(db, coupon, order, now=now):
            discount += coupons.discount_for(coupon, subtotal)

    order.discount_amount = discount
    order.total = compute_totals(subtotal, shipping_cost, discount)
    with translate_integrity_error(f"order {order.order_number}"):
        db.flush()
    db.refresh(order)

    emit(db, "order.placed", {
        "order_id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "items": [{"product_id": pid, "qty": qty} for pid, qty in lines.items()],
        "total": str(order.total),
    })
    logger.info(
        "[order] PLACED order_id=%s number=%s total=%s", order.id, order.order_number, order.total
    )
    return order


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order", order_id)
    return order


def status_history(db: Session, order_id: int) -> list[StatusHistoryEntry]:
    get_order(db, order_id)
    return list(db.execute(
        select(StatusHistoryEntry)
        .where(StatusHistoryEntry.order_id == order_id)
        .order_by(StatusHistoryEntry.id)
    ).scalars())
