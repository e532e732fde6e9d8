import pytest
from datetime import datetime, timedelta
from sqlalchemy.exc import IntegrityError

from models.order import Order
from models.order_item import OrderItem
from models.payment import Payment
from models.refund import Refund
from models.webhook_event import WebhookEvent


def _payment(order, **overrides):
    values = dict(
        tenant_id=order.tenant_id,
        order_id=order.id,
        amount_cents=10000,
        authorized_amount_cents=10000,
        refunded_cents=0,
        currency="USD",
        payment_method="card",
        status="paid",
        gateway_type="fake",
        idempotency_key=f"ord{order.id}-charge-1",
    )
    values.update(overrides)
    return Payment(**values)


class TestOrder:
    """Order totals and item rules"""

    def test_recalculate_totals(self, tenant):
        order = Order(tenant_id=tenant.id, order_number="ORD-X", order_status="draft",
                      customer_email="a@example.com", tax_cents=500, shipping_cents=1000, discount_cents=250)
        order.add_item(OrderItem(name="Boot", quantity=2, unit_price_cents=3000, discount_cents=0, total_cents=6000))
        order.add_item(OrderItem(name="Sock", quantity=3, unit_price_cents=500, discount_cents=100, total_cents=1400))

        assert order.recalculate_totals() == 7400 + 500 + 1000 - 250
        assert order.subtotal_cents == 7400

    def test_items_frozen_after_draft(self, order):
        order.order_status = "confirmed"
        with pytest.raises(ValueError):
            order.add_item(OrderItem(name="Late", quantity=1, unit_price_cents=100, total_cents=100))

    def test_order_number_unique_per_tenant(self, db, order):
        db.add(Order(tenant_id=order.tenant_id, order_number=order.order_number, customer_email="b@example.com"))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_negative_total_rejected_by_database(self, db, order):
        order.total_cents = -1
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()


class TestPayment:
    """Payment balance invariants"""

    def test_refundable_balance(self, order):
        payment = _payment(order, refunded_cents=2500)
        assert payment.refundable_cents == 7500

    def test_refunds_cannot_exceed_amount(self, db, order):
        db.add(_payment(order, refunded_cents=10001))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_idempotency_key_is_unique(self, db, order):
        db.add(_payment(order))
        db.commit()
        db.add(_payment(order))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_authorization_expiry(self, order):
        now = datetime(2024, 3, 1, 12, 0, 0)
        payment = _payment(order, status="authorized", authorization_expires_at=now + timedelta(days=7))
        assert not payment.authorization_expired(now)
        assert not payment.authorization_expired(now + timedelta(days=7))
        assert payment.authorization_expired(now + timedelta(days=7, seconds=1))

    def test_no_expiry_never_expires(self, order):
        assert not _payment(order).authorization_expired(datetime(2999, 1, 1))


class TestRefund:
    def test_amount_must_be_positive(self, db, order):
        payment = _payment(order)
        db.add(payment)
        db.commit()
        db.add(Refund(payment_id=payment.id, order_id=order.id, tenant_id=order.tenant_id, amount_cents=0))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()


class TestWebhookEvent:
    def test_event_unique_per_gateway(self, db):
        db.add(WebhookEvent(gateway_type="stripe", event_id="evt_1", event_type="charge.refunded", payload={}))
        db.add(WebhookEvent(gateway_type="paystack", event_id="evt_1", event_type="charge.success", payload={}))
        db.commit()

        db.add(WebhookEvent(gateway_type="stripe", event_id="evt_1", event_type="charge.refunded", payload={}))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_defaults(self, db):
        event = WebhookEvent(gateway_type="stripe", event_id="evt_9", event_type="x", payload={"a": 1})
        db.add(event)
        db.commit()
        assert event.processed is False
        assert event.processing_attempts == 0
        assert event.received_at is not None
