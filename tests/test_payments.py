from decimal import Decimal

import httpx
import pytest

from order_core import payments, state_machine
from order_core.database import session_scope
from order_core.errors import ConstraintViolation, DuplicatePayment, InvalidTransition, NotFound
from order_core.models import Order, OrderStatus, Payment, PaymentMethod, PaymentStatus


def _payment(session_factory, reference):
    with session_factory() as db:
        return payments.get_payment(db, reference)


def test_record_payment_starts_pending(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])

    with session_scope(session_factory) as db:
        payment = payments.record_payment(db, order_id, "25.00", "card", "ref-1")
        assert payment.status == PaymentStatus.PENDING
        assert payment.method == PaymentMethod.CARD
        assert payment.currency == "USD"
        assert payment.paid_at is None


def test_duplicate_reference_is_rejected(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])
    with session_scope(session_factory) as db:
        payments.record_payment(db, order_id, "25.00", "card", "ref-1")

    with pytest.raises(DuplicatePayment) as exc:
        with session_scope(session_factory) as db:
            payments.record_payment(db, order_id, "25.00", "card", "ref-1")
    assert exc.value.reference == "ref-1"

    with session_factory() as db:
        assert db.query(Payment).count() == 1


def test_record_payment_validates_input(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])

    with pytest.raises(ConstraintViolation):
        with session_scope(session_factory) as db:
            payments.record_payment(db, order_id, "0", "card", "zero")
    with pytest.raises(ConstraintViolation):
        with session_scope(session_factory) as db:
            payments.record_payment(db, order_id, "5.00", "cheque", "cheque-1")
    with pytest.raises(NotFound):
        with session_scope(session_factory) as db:
            payments.record_payment(db, 777, "5.00", "card", "nowhere")


def test_confirm_completes_and_stamps_paid_at(session_factory, store, place, outbox):
    order_id = place([(store.widget_id, 1)])
    with session_scope(session_factory) as db:
        payments.record_payment(db, order_id, "25.00", "wallet", "ref-1")
    with session_scope(session_factory) as db:
        payments.confirm(db, "ref-1", "completed")

    payment = _payment(session_factory, "ref-1")
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.paid_at is not None
    assert outbox("payment.completed")[0][1]["payment_reference"] == "ref-1"


def test_confirm_is_idempotent(session_factory, store, place, pay):
    order_id = place([(store.widget_id, 1)])
    pay(order_id, "25.00", "ref-1")

    with session_scope(session_factory) as db:
        payments.confirm(db, "ref-1", "completed")

    assert _payment(session_factory, "ref-1").status == PaymentStatus.COMPLETED


def test_confirm_cannot_flip_a_settled_payment(session_factory, store, place, pay):
    order_id = place([(store.widget_id, 1)])
    pay(order_id, "25.00", "ref-1")

    with pytest.raises(InvalidTransition):
        with session_scope(session_factory) as db:
            payments.confirm(db, "ref-1", "failed")

    assert _payment(session_factory, "ref-1").status == PaymentStatus.COMPLETED


def test_confirm_only_accepts_gateway_outcomes(session_factory, store, place, pay):
    order_id = place([(store.widget_id, 1)])
    pay(order_id, "25.00", "ref-1", outcome=None)

    for outcome in ("refunded", "pending", "bogus"):
        with pytest.raises(ConstraintViolation):
            with session_scope(session_factory) as db:
                payments.confirm(db, "ref-1", outcome)


def test_confirm_unknown_reference(session_factory, store):
    with pytest.raises(NotFound):
        with session_scope(session_factory) as db:
            payments.confirm(db, "nope", "completed")


def test_scenario_full_payment_unlocks_processing(session_factory, store, place, pay):
    # 100.00 subtotal + 5.00 shipping - 10.00 discount
    order_id = place([(store.widget_id, 4)], shipping_cost="5.00", discount_amount="10.00")

    with session_factory() as db:
        order = db.get(Order, order_id)
        assert order.total == Decimal("95.00")
        assert payments.is_paid_in_full(db, order) is False

    pay(order_id, "95.00", "ref-95")

    with session_scope(session_factory) as db:
        order = db.get(Order, order_id)
        assert payments.is_paid_in_full(db, order) is True
        state_machine.transition(db, order_id, "processing")

    with session_factory() as db:
        assert db.get(Order, order_id).status == OrderStatus.PROCESSING


def test_partial_payments_sum_up(session_factory, store, place, pay):
    order_id = place([(store.widget_id, 2)])
    pay(order_id, "20.00", "p1")
    pay(order_id, "10.00", "p2", outcome="failed")
    pay(order_id, "30.00", "p3")

    with session_factory() as db:
        assert payments.amount_paid(db, order_id) == Decimal("50.00")
        assert payments.is_paid_in_full(db, db.get(Order, order_id)) is True


def test_refund_is_a_new_row(session_factory, store, place, pay):
    order_id = place([(store.widget_id, 2)])
    pay(order_id, "50.00", "p1")

    with session_scope(session_factory) as db:
        refund = payments.refund(db, order_id, "20.00", "r1")
        assert refund.status == PaymentStatus.REFUNDED
        assert refund.method == PaymentMethod.CARD
        assert refund.amount == Decimal("20.00")

    original = _payment(session_factory, "p1")
    assert original.status == PaymentStatus.COMPLETED
    assert original.amount == Decimal("50.00")

    with session_factory() as db:
        assert payments.amount_refunded(db, order_id) == Decimal("20.00")
        assert payments.amount_paid(db, order_id) == Decimal("50.00")


def test_refund_cannot_exceed_what_was_paid(session_factory, store, place, pay):
    order_id = place([(store.widget_id, 2)])
    pay(order_id, "50.00", "p1")

    with session_scope(session_factory) as db:
        payments.refund(db, order_id, "30.00", "r1")

    with pytest.raises(ConstraintViolation):
        with session_scope(session_factory) as db:
            payments.refund(db, order_id, "20.01", "r2")


def test_refund_reference_must_be_unique(session_factory, store, place, pay):
    order_id = place([(store.widget_id, 2)])
    pay(order_id, "50.00", "p1")

    with pytest.raises(DuplicatePayment):
        with session_scope(session_factory) as db:
            payments.refund(db, order_id, "5.00", "p1")


def test_no_payments_on_cancelled_orders(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])
    with session_scope(session_factory) as db:
        state_machine.transition(db, order_id, "cancelled")

    with pytest.raises(ConstraintViolation):
        with session_scope(session_factory) as db:
            payments.record_payment(db, order_id, "25.00", "card", "late")


def _gateway(handler):
    return payments.HttpPaymentGateway(
        base_url="http://gateway.test", client=httpx.Client(transport=httpx.MockTransport(handler))
    )


def test_submit_applies_gateway_verdict(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = request.read()
        return httpx.Response(200, json={"status": "completed"})

    with session_scope(session_factory) as db:
        payment = payments.record_payment(db, order_id, "25.00", "card", "gw-1")
        result = payments.submit(db, _gateway(handler), payment)
        assert result.status == PaymentStatus.COMPLETED

    assert seen["path"] == "/payments/capture"
    assert b'"gw-1"' in seen["body"]
    assert _payment(session_factory, "gw-1").status == PaymentStatus.COMPLETED


def test_submit_records_declines(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])

    with session_scope(session_factory) as db:
        payment = payments.record_payment(db, order_id, "25.00", "card", "gw-1")
        payments.submit(db, _gateway(lambda r: httpx.Response(200, json={"status": "failed"})), payment)

    assert _payment(session_factory, "gw-1").status == PaymentStatus.FAILED


def test_submit_timeout_leaves_payment_pending(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])

    def handler(request):
        raise httpx.ReadTimeout("gateway too slow", request=request)

    with session_scope(session_factory) as db:
        payment = payments.record_payment(db, order_id, "25.00", "card", "gw-1")
        assert payments.submit(db, _gateway(handler), payment) is None

    assert _payment(session_factory, "gw-1").status == PaymentStatus.PENDING


def test_submit_gateway_error_leaves_payment_pending(session_factory, store, place):
    order_id = place([(store.widget_id, 1)])

    with session_scope(session_factory) as db:
        payment = payments.record_payment(db, order_id, "25.00", "card", "gw-1")
        gateway = _gateway(lambda r: httpx.Response(503, json={"detail": "down"}))
        assert payments.submit(db, gateway, payment) is None

    assert _payment(session_factory, "gw-1").status == PaymentStatus.PENDING
