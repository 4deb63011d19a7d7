"""
Inventory reservation engine.

Stock is tracked with two counters per product:
  available = quantity - reserved   (free to sell)
  reserved                          (earmarked for open orders)
  quantity                          (physically on hand)

reserve() earmarks, release() gives the earmark back, commit() removes the
stock from the warehouse when the order ships. Each check-then-update is a
single conditional UPDATE, so two transactions racing for the last unit can
never both pass the check.

release() and commit() run as effects of the order state machine, after the
order row has moved to its new status and before the history row for that
move is written. Outside that window they do nothing (release) or refuse
(commit), so stock is given back or shipped at most once per order.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Mapping

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from .errors import ConstraintViolation, InsufficientStock, NotFound
from .models import Inventory, Order, OrderStatus, Product, StatusHistoryEntry

logger = logging.getLogger(__name__)

# an order holds its reservation only while it has not shipped or been closed
HOLDING_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})
RELEASING_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


def merge_lines(lines: Mapping[int, int] | Iterable[tuple[int, int]]) -> dict[int, int]:
    items = lines.items() if isinstance(lines, Mapping) else lines
    merged: dict[int, int] = defaultdict(int)
    for product_id, qty in items:
        qty = int(qty)
        if qty <= 0:
            raise ConstraintViolation(f"Quantity for product {product_id} must be positive, got {qty}")
        merged[int(product_id)] += qty
    return dict(merged)


def available(db: Session, product_id: int) -> int:
    row = db.execute(
        select(Inventory.quantity, Inventory.reserved).where(Inventory.product_id == product_id)
    ).first()
    if row is None:
        return 0
    return row.quantity - row.reserved


def reserve(db: Session, lines, order_id: int | None = None) -> dict[int, int]:
    """
    Reserve every line or nothing.

    Rows are touched in ascending product_id order so concurrent reservations
    always lock in the same order. On the first line that cannot be satisfied
    InsufficientStock is raised and the savepoint discards the lines this
    call already reserved.

    "First" follows that ascending product_id order, not the order the lines
    were given in: when several products are short, the error names the one
    with the lowest id.
    """
    merged = merge_lines(lines)
    with db.begin_nested():
        for product_id in sorted(merged):
            qty = merged[product_id]
            result = db.execute(
                update(Inventory)
                .where(Inventory.product_id == product_id)
                .where(Inventory.quantity - Inventory.reserved >= qty)
                .values(reserved=Inventory.reserved + qty)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                have = available(db, product_id)
                logger.info(
                    "[inventory] OUT OF STOCK order_id=%s product_id=%s need=%s have=%s",
                    order_id, product_id, qty, have,
                )
                raise InsufficientStock(product_id, qty, have)

    logger.info("[inventory] RESERVED order_id=%s lines=%s", order_id, merged)
    return merged


def _already_recorded(db: Session, order_id: int, statuses) -> bool:
    row = db.execute(
        select(StatusHistoryEntry.id)
        .where(StatusHistoryEntry.order_id == order_id)
        .where(StatusHistoryEntry.new_status.in_(statuses))
        .limit(1)
    ).first()
    return row is not None


def release(db: Session, order: Order, previous_status: OrderStatus | None = None) -> bool:
    """
    Hand an order's reservation back to available stock.

    Stock is released only while the order is being closed: its status has
    already moved to cancelled or refunded, previous_status is the holding
    status it left, and the closing history row is not written yet. Every
    other call, including any repeat for the same order, releases nothing.
    Returns whether anything was released.
    """
    if (
        previous_status not in HOLDING_STATUSES
        or order.status not in RELEASING_STATUSES
        or _already_recorded(db, order.id, RELEASING_STATUSES)
    ):
        logger.info(
            "[inventory] release skipped order_id=%s status=%s previous=%s",
            order.id, order.status.value, getattr(previous_status, "value", previous_status),
        )
        return False

    for item in sorted(order.items, key=lambda i: i.product_id):
        db.execute(
            update(Inventory)
            .where(Inventory.product_id == item.product_id)
            .values(
                reserved=case(
                    (Inventory.reserved >= item.quantity, Inventory.reserved - item.quantity),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )

    logger.info("[inventory] RELEASED order_id=%s", order.id)
    return True


def commit(db: Session, order: Order, previous_status: OrderStatus | None = None) -> None:
    """Stock leaves the warehouse: drop both on-hand and reserved counts."""
    if (
        previous_status != OrderStatus.PROCESSING
        or order.status != OrderStatus.SHIPPED
        or _already_recorded(db, order.id, (OrderStatus.SHIPPED,))
    ):
        raise ConstraintViolation(
            f"Order {order.id} can only commit stock while shipping from processing"
        )

    for item in sorted(order.items, key=lambda i: i.product_id):
        result = db.execute(
            update(Inventory)
            .where(Inventory.product_id == item.product_id)
            .where(Inventory.reserved >= item.quantity)
            .where(Inventory.quantity >= item.quantity)
            .values(
                quantity=Inventory.quantity - item.quantity,
                reserved=Inventory.reserved - item.quantity,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConstraintViolation(
                f"Reservation for product {item.product_id} on order {order.id} "
                f"does not cover {item.quantity} units"
            )

    logger.info("[inventory] COMMITTED order_id=%s", order.id)


def restock(db: Session, product_id: int, quantity: int, now: datetime | None = None) -> int:
    if quantity <= 0:
        raise ConstraintViolation(f"Restock quantity must be positive, got {quantity}")
    if db.get(Product, product_id) is None:
        raise NotFound("Product", product_id)

    now = now or datetime.now(timezone.utc)
    result = db.execute(
        update(Inventory)
        .where(Inventory.product_id == product_id)
        .values(quantity=Inventory.quantity + quantity, last_restocked=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(Inventory(product_id=product_id, quantity=quantity, reserved=0, last_restocked=now))
        db.flush()

    on_hand = db.execute(
        select(Inventory.quantity).where(Inventory.product_id == product_id)
    ).scalar_one()
    logger.info("[inventory] RESTOCKED product_id=%s added=%s on_hand=%s", product_id, quantity, on_hand)
    return on_hand
