from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from order_core import orders, payments
from order_core.database import create_db_engine, init_db, make_session_factory, session_scope
from order_core.models import (
    Address,
    Coupon,
    Customer,
    DiscountType,
    EventOutbox,
    Inventory,
    Product,
    User,
    UserRole,
)
from order_core.schemas import OrderCreate


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'store.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    """A customer with two addresses, a few stocked products and some coupons."""
    now = datetime.now(timezone.utc)
    with session_scope(session_factory) as db:
        admin = User(email="ops@example.com", password_hash="x", role=UserRole.ADMIN)
        buyer = User(email="ada@example.com", password_hash="x", role=UserRole.CUSTOMER)
        other = User(email="bob@example.com", password_hash="x", role=UserRole.CUSTOMER)
        db.add_all([admin, buyer, other])
        db.flush()

        db.add_all([
            Customer(user_id=buyer.id, first_name="Ada", last_name="Lovelace"),
            Customer(user_id=other.id, first_name="Bob", last_name="Builder"),
        ])
        db.flush()

        home = Address(customer_id=buyer.id, label="Home", street="1 Main St", city="London", country="UK")
        office = Address(customer_id=buyer.id, label="Office", street="2 Side St", city="London", country="UK")
        elsewhere = Address(customer_id=other.id, label="Home", street="3 Far Rd", city="Leeds", country="UK")
        db.add_all([home, office, elsewhere])

        widget = Product(sku="WID-1", name="Widget", price=Decimal("25.00"))
        gadget = Product(sku="GAD-1", name="Gadget", price=Decimal("50.00"))
        last_one = Product(sku="LAST-1", name="Last unit", price=Decimal("10.00"))
        retired = Product(sku="OLD-1", name="Retired", price=Decimal("5.00"), active=False)
        db.add_all([widget, gadget, last_one, retired])
        db.flush()

        db.add_all([
            Inventory(product_id=widget.id, quantity=10, reserved=0),
            Inventory(product_id=gadget.id, quantity=5, reserved=0),
            Inventory(product_id=last_one.id, quantity=1, reserved=0),
            Inventory(product_id=retired.id, quantity=3, reserved=0),
        ])

        db.add_all([
            Coupon(code="TENOFF", discount_type=DiscountType.FIXED, discount_value=Decimal("10.00")),
            Coupon(code="PCT10", discount_type=DiscountType.PERCENTAGE, discount_value=Decimal("10.00")),
            Coupon(code="FIVE", discount_type=DiscountType.FIXED, discount_value=Decimal("1.00"), usage_limit=5),
            Coupon(code="OLD", discount_type=DiscountType.FIXED, discount_value=Decimal("1.00"),
                   expires_at=now - timedelta(days=1)),
            Coupon(code="OFF", discount_type=DiscountType.FIXED, discount_value=Decimal("1.00"), active=False),
        ])
        db.flush()

        return SimpleNamespace(
            admin_id=admin.id,
            customer_id=buyer.id,
            other_customer_id=other.id,
            home_id=home.id,
            office_id=office.id,
            elsewhere_id=elsewhere.id,
            widget_id=widget.id,
            gadget_id=gadget.id,
            last_one_id=last_one.id,
            retired_id=retired.id,
        )


@pytest.fixture
def make_draft(store):
    def _make(items, **kwargs):
        data = dict(
            customer_id=store.customer_id,
            billing_address_id=store.home_id,
            shipping_address_id=store.office_id,
            items=[{"product_id": pid, "quantity": qty} for pid, qty in items],
        )
        data.update(kwargs)
        return OrderCreate(**data)
    return _make


@pytest.fixture
def stock(session_factory):
    def _stock(product_id):
        with session_factory() as db:
            row = db.get(Inventory, product_id)
            return row.quantity, row.reserved
    return _stock


@pytest.fixture
def outbox(session_factory):
    def _events(event_type=None):
        with session_factory() as db:
            stmt = select(EventOutbox).order_by(EventOutbox.id)
            if event_type:
                stmt = stmt.where(EventOutbox.event_type == event_type)
            return [(e.event_type, e.payload) for e in db.execute(stmt).scalars()]
    return _events


@pytest.fixture
def place(session_factory, make_draft):
    def _place(items, **kwargs):
        with session_scope(session_factory) as db:
            return orders.place_order(db, make_draft(items, **kwargs)).id
    return _place


@pytest.fixture
def pay(session_factory):
    def _pay(order_id, amount, reference, outcome="completed"):
        with session_scope(session_factory) as db:
            payments.record_payment(db, order_id, amount, "card", reference)
            if outcome:
                payments.confirm(db, reference, outcome)
    return _pay
