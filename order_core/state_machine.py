"""
Order state machine.

        pending --process--> processing --ship--> shipped --deliver--> delivered
           |                    |    \\                                   |
         cancel               cancel  refund                            refund
           v                    v       v                                 v
        cancelled           cancelled refunded                         refunded

TRANSITIONS is the whole truth: a (status, event) pair missing from it is
rejected. Each successful transition updates the order, appends one history
row and queues an outbox event in the caller's transaction.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.attributes import set_committed_value

from . import inventory, payments
from .database import translate_integrity_error
from .errors import InvalidTransition, NotFound
from .events import emit
from .models import Order, OrderStatus, StatusHistoryEntry, User

logger = logging.getLogger(__name__)


class OrderEvent(str, enum.Enum):
    PROCESS = "process"
    SHIP = "ship"
    DELIVER = "deliver"
    CANCEL = "cancel"
    REFUND = "refund"


def _require_paid_in_full(db: Session, order: Order) -> str | None:
    if not payments.is_paid_in_full(db, order):
        return f"order {order.id} is not paid in full"
    return None


def _require_completed_payment(db: Session, order: Order) -> str | None:
    if not payments.has_completed_payment(db, order.id):
        return f"order {order.id} has no completed payment"
    return None


@dataclass(frozen=True)
class Transition:
    target: OrderStatus
    guard: Callable[[Session, Order], str | None] | None = None
    effects: tuple[Callable[[Session, Order, OrderStatus], object], ...] = ()


TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], Transition] = {
    (OrderStatus.PENDING, OrderEvent.PROCESS): Transition(
        OrderStatus.PROCESSING, guard=_require_paid_in_full
    ),
    (OrderStatus.PROCESSING, OrderEvent.SHIP): Transition(
        OrderStatus.SHIPPED, effects=(inventory.commit,)
    ),
    (OrderStatus.SHIPPED, OrderEvent.DELIVER): Transition(OrderStatus.DELIVERED),
    (OrderStatus.PENDING, OrderEvent.CANCEL): Transition(
        OrderStatus.CANCELLED, effects=(inventory.release,)
    ),
    (OrderStatus.PROCESSING, OrderEvent.CANCEL): Transition(
        OrderStatus.CANCELLED, effects=(inventory.release,)
    ),
    (OrderStatus.PROCESSING, OrderEvent.REFUND): Transition(
        OrderStatus.REFUNDED, guard=_require_completed_payment, effects=(inventory.release,)
    ),
    (OrderStatus.DELIVERED, OrderEvent.REFUND): Transition(
        OrderStatus.REFUNDED, guard=_require_completed_payment
    ),
}

EVENT_FOR_TARGET: dict[OrderStatus, OrderEvent] = {
    OrderStatus.PROCESSING: OrderEvent.PROCESS,
    OrderStatus.SHIPPED: OrderEvent.SHIP,
    OrderStatus.DELIVERED: OrderEvent.DELIVER,
    OrderStatus.CANCELLED: OrderEvent.CANCEL,
    OrderStatus.REFUNDED: OrderEvent.REFUND,
}

TARGET_FOR_EVENT: dict[OrderEvent, OrderStatus] = {e: s for s, e in EVENT_FOR_TARGET.items()}

TERMINAL_STATUSES = frozenset(
    s for s in OrderStatus if not any(current == s for current, _ in TRANSITIONS)
)


def allowed_events(status: OrderStatus) -> list[OrderEvent]:
    return [event for current, event in TRANSITIONS if current == status]


def _lock_order(db: Session, order_id: int) -> Order:
    order = db.execute(
        select(Order)
        .where(Order.id == order_id)
        .options(selectinload(Order.items))
        .with_for_update(of=Order)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise NotFound("Order", order_id)
    return order


def fire(
    db: Session,
    order_id: int,
    event,
    actor_id: int | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> StatusHistoryEntry:
    event = OrderEvent(event)
    order = _lock_order(db, order_id)
    current = order.status

    step = TRANSITIONS.get((current, event))
    if step is None:
        logger.info("[order] rejected order_id=%s status=%s event=%s", order.id, current.value, event.value)
        allowed = ", ".join(e.value for e in allowed_events(current)) or "none"
        raise InvalidTransition(
            current,
            TARGET_FOR_EVENT[event],
            reason=f"{event.value} is not allowed from {current.value} (allowed: {allowed})",
        )

    if step.guard is not None:
        reason = step.guard(db, order)
        if reason:
            logger.info("[order] guard failed order_id=%s event=%s: %s", order.id, event.value, reason)
            raise InvalidTransition(current, step.target, reason=reason)

    if actor_id is not None and db.get(User, actor_id) is None:
        raise NotFound("User", actor_id)

    result = db.execute(
        update(Order)
        .where(Order.id == order.id)
        .where(Order.status == current)
        .values(status=step.target)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidTransition(current, step.target, reason="order changed concurrently")
    set_committed_value(order, "status", step.target)

    # effects run on the order in its new status, before its history row exists
    for effect in step.effects:
        effect(db, order, current)

    entry = StatusHistoryEntry(
        order_id=order.id,
        previous_status=current,
        new_status=step.target,
        changed_by_user_id=actor_id,
        changed_at=now or datetime.now(timezone.utc),
        note=note,
    )
    db.add(entry)
    emit(db, "order.status_changed", {
        "order_id": order.id,
        "order_number": order.order_number,
        "previous_status": current.value,
        "new_status": step.target.value,
        "event": event.value,
    })
    with translate_integrity_error(f"order {order.id} {current.value} -> {step.target.value}"):
        db.flush()

    logger.info(
        "[order] order_id=%s %s -> %s by=%s", order.id, current.value, step.target.value, actor_id
    )
    return entry


def transition(
    db: Session,
    order_id: int,
    target,
    actor_id: int | None = None,
    note: str | None = None,
    now: datetime | None = None,
) -> StatusHistoryEntry:
    """Status-addressed wrapper around fire()."""
    target = OrderStatus(target)
    event = EVENT_FOR_TARGET.get(target)
    if event is None:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFound("Order", order_id)
        raise InvalidTransition(order.status, target, reason="no event leads to this status")
    return fire(db, order_id, event, actor_id=actor_id, note=note, now=now)
