import hashlib
import hmac
import json
import time
from unittest.mock import Mock

import pytest
import requests

from core.errors import UnsupportedGateway
from models.enums import WebhookEventKind
from services.gateways import GatewayRegistry
from services.gateways.base import GatewayDeclined, GatewayTransportError
from services.gateways.paystack import PaystackGateway
from services.gateways.stripe import StripeGateway


def _response(status_code, body):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = body
    return resp


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def stripe(session):
    return StripeGateway(
        base_url="https://api.stripe.test/v1",
        secret_key="sk_test",
        webhook_secret="whsec_test",
        timeout=5,
        session=session,
    )


@pytest.fixture
def paystack(session):
    return PaystackGateway(base_url="https://api.paystack.test", secret_key="sk_paystack", timeout=5, session=session)


def _stripe_signature(body: bytes, secret: str = "whsec_test", timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + body
    return f"t={timestamp},v1={hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()}"


class TestStripeGateway:
    def test_authorize_sends_idempotency_key_and_manual_capture(self, stripe, session):
        session.post.return_value = _response(200, {
            "id": "pi_123", "status": "requires_capture", "amount_capturable": 10000,
        })

        result = stripe.authorize(10000, "USD", {"type": "card", "token": "pm_card"}, {"payment_id": 9}, "ord1-authorize-1")

        assert result.transaction_id == "pi_123"
        assert result.authorization_id == "pi_123"
        assert result.amount_cents == 10000
        assert result.gateway_fee_cents == 320
        _, kwargs = session.post.call_args
        assert kwargs["headers"]["Idempotency-Key"] == "ord1-authorize-1"
        assert ("capture_method", "manual") in kwargs["data"]
        assert ("metadata[payment_id]", "9") in kwargs["data"]
        assert ("currency", "usd") in kwargs["data"]
        assert kwargs["timeout"] == 5

    def test_card_error_is_a_decline(self, stripe, session):
        session.post.return_value = _response(402, {
            "error": {"type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds",
                      "message": "Your card has insufficient funds."},
        })

        with pytest.raises(GatewayDeclined) as exc:
            stripe.charge(5000, "usd", {"token": "pm_card"}, {}, "ord1-charge-1")

        assert exc.value.code == "insufficient_funds"
        assert "insufficient funds" in exc.value.message

    def test_intent_left_in_wrong_status_is_a_decline(self, stripe, session):
        session.post.return_value = _response(200, {
            "id": "pi_123", "status": "requires_payment_method",
            "last_payment_error": {"code": "card_declined", "message": "Declined"},
        })
        with pytest.raises(GatewayDeclined) as exc:
            stripe.authorize(10000, "usd", {"token": "pm_card"}, {}, "k")
        assert exc.value.code == "card_declined"

    def test_timeout_is_a_transport_error(self, stripe, session):
        session.post.side_effect = requests.Timeout("read timed out")
        with pytest.raises(GatewayTransportError):
            stripe.capture("pi_123", 10000, "usd", "capture-1")

    def test_server_error_is_a_transport_error(self, stripe, session):
        session.post.return_value = _response(502, {})
        with pytest.raises(GatewayTransportError):
            stripe.refund("pi_123", 2500, None, "refund-1")

    def test_capture_posts_partial_amount(self, stripe, session):
        session.post.return_value = _response(200, {"id": "pi_123", "status": "succeeded", "amount_received": 6000})

        result = stripe.capture("pi_123", 6000, "usd", "capture-4")

        url = session.post.call_args[0][0]
        assert url == "https://api.stripe.test/v1/payment_intents/pi_123/capture"
        assert session.post.call_args[1]["data"] == [("amount_to_capture", "6000")]
        assert result.amount_cents == 6000

    def test_failed_refund_object_is_a_decline(self, stripe, session):
        session.post.return_value = _response(200, {"id": "re_1", "status": "failed", "failure_reason": "expired_or_canceled_card"})
        with pytest.raises(GatewayDeclined) as exc:
            stripe.refund("pi_123", 2500, "requested_by_customer", "refund-1")
        assert exc.value.code == "expired_or_canceled_card"

    def test_pending_refund_is_accepted(self, stripe, session):
        session.post.return_value = _response(200, {"id": "re_1", "status": "pending", "amount": 2500})
        result = stripe.refund("pi_123", 2500, None, "refund-1")
        assert (result.refund_id, result.status, result.amount_cents) == ("re_1", "pending", 2500)

    def test_fee_estimate(self, stripe):
        assert stripe.estimate_fee(10000) == 320
        assert stripe.estimate_fee(0) == 30

    def test_valid_signature(self, stripe):
        body = b'{"id": "evt_1"}'
        assert stripe.verify_webhook(body, {"Stripe-Signature": _stripe_signature(body)})

    def test_forged_signature(self, stripe):
        body = b'{"id": "evt_1"}'
        assert not stripe.verify_webhook(body, {"Stripe-Signature": _stripe_signature(body, secret="whsec_other")})

    def test_tampered_body(self, stripe):
        header = _stripe_signature(b'{"amount": 100}')
        assert not stripe.verify_webhook(b'{"amount": 100000}', {"Stripe-Signature": header})

    def test_signature_outside_tolerance(self, stripe):
        body = b'{"id": "evt_1"}'
        stale = int(time.time()) - 3600
        assert not stripe.verify_webhook(body, {"Stripe-Signature": _stripe_signature(body, timestamp=stale)})

    def test_missing_signature(self, stripe):
        assert not stripe.verify_webhook(b"{}", {})

    def test_parse_payment_intent_succeeded(self, stripe):
        event = stripe.parse_event({
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_123", "amount_received": 10000, "metadata": {"payment_id": "42"}}},
        })
        assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert event.transaction_reference == "pi_123"
        assert event.payment_id == 42
        assert event.amount_cents == 10000

    def test_parse_charge_refunded(self, stripe):
        event = stripe.parse_event({
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {
                "id": "ch_1", "payment_intent": "pi_123", "amount_refunded": 4000,
                "refunds": {"data": [{"id": "re_9", "status": "succeeded", "amount": 1500}]},
            }},
        })
        assert event.kind == WebhookEventKind.REFUND_SUCCEEDED
        assert event.transaction_reference == "pi_123"
        assert event.refunded_total_cents == 4000
        assert (event.refund_reference, event.refund_status, event.amount_cents) == ("re_9", "succeeded", 1500)

    def test_parse_uncaptured_charge_succeeded_is_an_authorization(self, stripe):
        event = stripe.parse_event({
            "id": "evt_5",
            "type": "charge.succeeded",
            "data": {"object": {"id": "ch_1", "payment_intent": "pi_123", "amount": 10000, "captured": False,
                                "metadata": {"payment_id": "42"}}},
        })
        assert event.kind == WebhookEventKind.PAYMENT_AUTHORIZED
        assert (event.transaction_reference, event.payment_id) == ("pi_123", 42)

    def test_parse_captured_charge_succeeded(self, stripe):
        event = stripe.parse_event({
            "id": "evt_6",
            "type": "charge.succeeded",
            "data": {"object": {"id": "ch_2", "payment_intent": "pi_456", "amount": 10000,
                                "amount_captured": 8000, "captured": True}},
        })
        assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert event.transaction_reference == "pi_456"
        assert event.amount_cents == 8000

    def test_parse_charge_failed(self, stripe):
        event = stripe.parse_event({
            "id": "evt_7",
            "type": "charge.failed",
            "data": {"object": {"id": "ch_3", "payment_intent": "pi_789", "amount": 10000,
                                "failure_code": "card_declined", "failure_message": "Your card was declined."}},
        })
        assert event.kind == WebhookEventKind.PAYMENT_FAILED
        assert event.transaction_reference == "pi_789"
        assert (event.failure_code, event.failure_message) == ("card_declined", "Your card was declined.")

    def test_parse_refund_created(self, stripe):
        event = stripe.parse_event({
            "id": "evt_8",
            "type": "refund.created",
            "data": {"object": {"id": "re_7", "payment_intent": "pi_123", "amount": 2500, "status": "pending"}},
        })
        assert event.kind == WebhookEventKind.REFUND_UPDATED
        assert (event.refund_reference, event.refund_status, event.amount_cents) == ("re_7", "pending", 2500)
        assert event.transaction_reference == "pi_123"

    def test_parse_dispute(self, stripe):
        event = stripe.parse_event({
            "id": "evt_3",
            "type": "charge.dispute.created",
            "data": {"object": {"id": "dp_1", "charge": "ch_1", "payment_intent": "pi_123",
                                "amount": 10000, "reason": "fraudulent", "status": "needs_response"}},
        })
        assert event.kind == WebhookEventKind.DISPUTE_OPENED
        assert event.dispute["reason"] == "fraudulent"
        assert event.transaction_reference == "pi_123"

    def test_unknown_event_type_is_unhandled(self, stripe):
        event = stripe.parse_event({"id": "evt_4", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})
        assert event.kind == WebhookEventKind.UNHANDLED

    def test_malformed_event(self, stripe):
        with pytest.raises(ValueError):
            stripe.parse_event({"type": "payment_intent.succeeded"})


class TestPaystackGateway:
    def test_charge_authorization(self, paystack, session):
        session.post.return_value = _response(200, {
            "status": True,
            "data": {"reference": "ord5-charge-1", "status": "success", "amount": 250000, "fees": 3750},
        })

        result = paystack.charge(250000, "NGN", {"type": "card", "token": "AUTH_abc"},
                                 {"customer_email": "buyer@example.com", "payment_id": 3}, "ord5-charge-1")

        assert result.transaction_id == "ord5-charge-1"
        assert result.gateway_fee_cents == 3750
        url = session.post.call_args[0][0]
        payload = session.post.call_args[1]["json"]
        assert url == "https://api.paystack.test/transaction/charge_authorization"
        assert payload["authorization_code"] == "AUTH_abc"
        assert payload["email"] == "buyer@example.com"
        assert payload["reference"] == "ord5-charge-1"

    def test_failed_charge_is_a_decline(self, paystack, session):
        session.post.return_value = _response(200, {
            "status": True,
            "data": {"reference": "r", "status": "failed", "gateway_response": "Insufficient Funds"},
        })
        with pytest.raises(GatewayDeclined) as exc:
            paystack.charge(1000, "NGN", {"token": "AUTH_abc"}, {}, "r")
        assert exc.value.code == "failed"
        assert exc.value.message == "Insufficient Funds"

    def test_rejected_request_is_a_decline(self, paystack, session):
        session.post.return_value = _response(400, {"status": False, "message": "Invalid authorization code"})
        with pytest.raises(GatewayDeclined) as exc:
            paystack.authorize(1000, "NGN", {"token": "AUTH_bad"}, {}, "r")
        assert exc.value.message == "Invalid authorization code"

    def test_connection_error_is_a_transport_error(self, paystack, session):
        session.post.side_effect = requests.ConnectionError("reset by peer")
        with pytest.raises(GatewayTransportError):
            paystack.refund("ord5-charge-1", 1000, None, "refund-1")

    def test_unreadable_body_is_a_transport_error(self, paystack, session):
        resp = _response(200, None)
        resp.json.side_effect = ValueError("no json")
        session.post.return_value = resp
        with pytest.raises(GatewayTransportError):
            paystack.capture("ord5-authorize-1", 1000, "NGN", "capture-1")

    def test_refund_returns_pending(self, paystack, session):
        session.post.return_value = _response(200, {"status": True, "data": {"id": 771, "amount": 1000, "status": "pending"}})
        result = paystack.refund("ord5-charge-1", 1000, "damaged", "refund-1")
        assert (result.refund_id, result.status) == ("771", "pending")
        assert session.post.call_args[1]["json"]["merchant_note"] == "damaged"

    def test_signature(self, paystack):
        body = json.dumps({"event": "charge.success"}).encode()
        signature = hmac.new(b"sk_paystack", body, hashlib.sha512).hexdigest()
        assert paystack.verify_webhook(body, {"x-paystack-signature": signature})
        assert not paystack.verify_webhook(body + b" ", {"x-paystack-signature": signature})
        assert not paystack.verify_webhook(body, {})

    def test_event_id_is_derived_from_type_and_data(self, paystack):
        event = paystack.parse_event({
            "event": "charge.success",
            "data": {"id": 302961, "reference": "ord5-charge-1", "amount": 250000, "metadata": {"payment_id": 5}},
        })
        assert event.event_id == "charge.success:302961"
        assert event.kind == WebhookEventKind.PAYMENT_SUCCEEDED
        assert event.transaction_reference == "ord5-charge-1"
        assert event.payment_id == 5

    def test_refund_event_references_original_transaction(self, paystack):
        event = paystack.parse_event({
            "event": "refund.processed",
            "data": {"id": 88, "refund_reference": "RF_1", "transaction_reference": "ord5-charge-1",
                     "amount": 1000, "status": "processed"},
        })
        assert event.kind == WebhookEventKind.REFUND_SUCCEEDED
        assert event.refund_reference == "88"
        assert event.refund_aliases == ("RF_1",)
        assert event.transaction_reference == "ord5-charge-1"
        assert event.refund_status == "processed"

    def test_refund_id_matches_between_refund_call_and_event(self, paystack, session):
        session.post.return_value = _response(200, {"status": True, "data": {"id": 555, "status": "pending", "amount": 2000}})
        result = paystack.refund("ord5-charge-1", 2000, None, "refund-1")
        event = paystack.parse_event({
            "event": "refund.processed",
            "data": {"id": 555, "refund_reference": "RRN123", "transaction_reference": "ord5-charge-1", "amount": 2000},
        })
        assert event.refund_reference == result.refund_id == "555"

    def test_refund_event_without_paystack_id_uses_bank_reference(self, paystack):
        event = paystack.parse_event({
            "event": "refund.failed",
            "data": {"refund_reference": "RRN9", "transaction_reference": "ord5-charge-1", "amount": 500},
        })
        assert event.refund_reference == "RRN9"
        assert event.refund_aliases == ()

    def test_event_without_data_rejected(self, paystack):
        with pytest.raises(ValueError):
            paystack.parse_event({"event": "charge.success"})


class TestGatewayRegistry:
    def test_lookup_is_case_insensitive(self, stripe, paystack):
        registry = GatewayRegistry([stripe, paystack])
        assert registry.get("Stripe") is stripe
        assert registry.names() == ["paystack", "stripe"]

    def test_unknown_gateway(self, stripe):
        with pytest.raises(UnsupportedGateway):
            GatewayRegistry([stripe]).get("square")
