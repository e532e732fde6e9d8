import hashlib
import hmac
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from models.enums import WebhookEventKind
from services.gateways.base import (
    GatewayDeclined,
    GatewayEvent,
    GatewayRefundResult,
    GatewayResult,
    HttpGateway,
    _metadata_payment_id,
)


class StripeGateway(HttpGateway):
    """Stripe PaymentIntents over the REST API (form-encoded, Idempotency-Key on every POST)."""

    name = "stripe"
    EVENT_KINDS = {
        "payment_intent.amount_capturable_updated": WebhookEventKind.PAYMENT_AUTHORIZED,
        "payment_intent.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
        "payment_intent.payment_failed": WebhookEventKind.PAYMENT_FAILED,
        "payment_intent.canceled": WebhookEventKind.PAYMENT_CANCELLED,
        "charge.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
        "charge.captured": WebhookEventKind.PAYMENT_SUCCEEDED,
        "charge.failed": WebhookEventKind.PAYMENT_FAILED,
        "charge.refunded": WebhookEventKind.REFUND_SUCCEEDED,
        "charge.refund.updated": WebhookEventKind.REFUND_UPDATED,
        "refund.created": WebhookEventKind.REFUND_UPDATED,
        "refund.updated": WebhookEventKind.REFUND_UPDATED,
        "refund.failed": WebhookEventKind.REFUND_FAILED,
        "charge.dispute.created": WebhookEventKind.DISPUTE_OPENED,
        "charge.dispute.closed": WebhookEventKind.DISPUTE_CLOSED,
    }

    def __init__(self, base_url: str, secret_key: str, webhook_secret: str, timeout: float,
                 tolerance_seconds: int = 300, fee_percentage: Decimal = Decimal("2.9"), fee_fixed_cents: int = 30,
                 session: Optional[requests.Session] = None):
        super().__init__(base_url, secret_key, timeout, session)
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.fee_percentage = fee_percentage
        self.fee_fixed_cents = fee_fixed_cents

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _decline_from(self, resp: requests.Response, body: Dict[str, Any]) -> GatewayDeclined:
        error = body.get("error") or {}
        code = error.get("decline_code") or error.get("code") or error.get("type") or str(resp.status_code)
        return GatewayDeclined(code=code, message=error.get("message") or "Stripe declined the request", response=body)

    def estimate_fee(self, amount_cents: int) -> int:
        """Processing fee estimate; the exact fee only exists on the balance transaction."""
        fee = Decimal(amount_cents) * self.fee_percentage / Decimal(100)
        return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP)) + self.fee_fixed_cents

    @staticmethod
    def _form(fields: Dict[str, Any], metadata: Dict[str, Any]) -> List[Tuple[str, str]]:
        form = [(key, str(value)) for key, value in fields.items() if value is not None]
        form.extend((f"metadata[{key}]", str(value)) for key, value in metadata.items() if value is not None)
        return form

    def _create_intent(self, amount_cents, currency, payment_method, metadata, idempotency_key, capture_method) -> Dict[str, Any]:
        form = self._form(
            {
                "amount": amount_cents,
                "currency": currency.lower(),
                "payment_method": payment_method["token"],
                "confirm": "true",
                "capture_method": capture_method,
                "automatic_payment_methods[enabled]": "true",
                "automatic_payment_methods[allow_redirects]": "never",
            },
            metadata,
        )
        return self._post("/payment_intents", idempotency_key=idempotency_key, data=form)

    @staticmethod
    def _require_status(intent: Dict[str, Any], expected: str) -> None:
        if intent.get("status") != expected:
            error = intent.get("last_payment_error") or {}
            raise GatewayDeclined(
                code=error.get("decline_code") or error.get("code") or intent.get("status") or "declined",
                message=error.get("message") or f"PaymentIntent is {intent.get('status')}",
                response=intent,
            )

    def authorize(self, amount_cents, currency, payment_method, metadata, idempotency_key) -> GatewayResult:
        intent = self._create_intent(amount_cents, currency, payment_method, metadata, idempotency_key, "manual")
        self._require_status(intent, "requires_capture")
        return GatewayResult(
            transaction_id=intent["id"],
            authorization_id=intent["id"],
            gateway_fee_cents=self.estimate_fee(amount_cents),
            amount_cents=intent.get("amount_capturable") or amount_cents,
            status=intent.get("status"),
            raw=intent,
        )

    def capture(self, authorization_id, amount_cents, currency, idempotency_key) -> GatewayResult:
        intent = self._post(
            f"/payment_intents/{authorization_id}/capture",
            idempotency_key=idempotency_key,
            data=[("amount_to_capture", str(amount_cents))],
        )
        self._require_status(intent, "succeeded")
        return GatewayResult(
            transaction_id=intent["id"],
            authorization_id=authorization_id,
            gateway_fee_cents=self.estimate_fee(amount_cents),
            amount_cents=intent.get("amount_received") or amount_cents,
            status=intent.get("status"),
            raw=intent,
        )

    def charge(self, amount_cents, currency, payment_method, metadata, idempotency_key) -> GatewayResult:
        intent = self._create_intent(amount_cents, currency, payment_method, metadata, idempotency_key, "automatic")
        self._require_status(intent, "succeeded")
        return GatewayResult(
            transaction_id=intent["id"],
            gateway_fee_cents=self.estimate_fee(amount_cents),
            amount_cents=intent.get("amount_received") or amount_cents,
            status=intent.get("status"),
            raw=intent,
        )

    def refund(self, transaction_id, amount_cents, reason, idempotency_key) -> GatewayRefundResult:
        refund = self._post(
            "/refunds",
            idempotency_key=idempotency_key,
            data=self._form({"payment_intent": transaction_id, "amount": amount_cents}, {"reason": reason}),
        )
        if refund.get("status") in ("failed", "canceled"):
            raise GatewayDeclined(
                code=refund.get("failure_reason") or refund["status"],
                message=f"Refund {refund.get('id')} {refund['status']}",
                response=refund,
            )
        return GatewayRefundResult(
            refund_id=refund["id"],
            amount_cents=int(refund.get("amount") or amount_cents),
            status=refund.get("status") or "pending",
            raw=refund,
        )

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        header = {k.lower(): v for k, v in headers.items()}.get("stripe-signature", "")
        if not self.webhook_secret or not header:
            return False

        timestamp = None
        signatures = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            return False
        try:
            if abs(time.time() - int(timestamp)) > self.tolerance_seconds:
                return False
        except ValueError:
            return False

        signed = timestamp.encode() + b"." + body
        expected = hmac.new(self.webhook_secret.encode(), signed, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, sig) for sig in signatures)

    def parse_event(self, payload: Dict[str, Any]) -> GatewayEvent:
        event_id = payload.get("id")
        event_type = payload.get("type")
        obj = (payload.get("data") or {}).get("object")
        if not event_id or not event_type or not isinstance(obj, dict):
            raise ValueError("Stripe event must carry 'id', 'type' and 'data.object'")

        kind = self.event_kind(event_type)
        event = GatewayEvent(event_id=event_id, event_type=event_type, kind=kind)

        if event_type.startswith("payment_intent."):
            error = obj.get("last_payment_error") or {}
            event.transaction_reference = obj.get("id")
            event.payment_id = _metadata_payment_id(obj.get("metadata"))
            event.amount_cents = obj.get("amount_received") or obj.get("amount")
            event.failure_code = error.get("decline_code") or error.get("code")
            event.failure_message = error.get("message")
        elif event_type in ("charge.succeeded", "charge.captured", "charge.failed"):
            if event_type == "charge.succeeded" and obj.get("captured") is False:
                # A manual-capture charge succeeds when it is authorized
                event.kind = WebhookEventKind.PAYMENT_AUTHORIZED
            event.transaction_reference = obj.get("payment_intent") or obj.get("id")
            event.payment_id = _metadata_payment_id(obj.get("metadata"))
            event.amount_cents = obj.get("amount_captured") or obj.get("amount")
            event.failure_code = obj.get("failure_code")
            event.failure_message = obj.get("failure_message")
        elif event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            latest = refunds[0] if refunds else {}
            event.transaction_reference = obj.get("payment_intent") or obj.get("id")
            event.payment_id = _metadata_payment_id(obj.get("metadata"))
            event.refunded_total_cents = obj.get("amount_refunded")
            event.refund_reference = latest.get("id")
            event.refund_status = latest.get("status")
            event.amount_cents = latest.get("amount")
        elif event_type in ("charge.refund.updated", "refund.created", "refund.updated", "refund.failed"):
            event.transaction_reference = obj.get("payment_intent")
            event.payment_id = _metadata_payment_id(obj.get("metadata"))
            event.refund_reference = obj.get("id")
            event.refund_status = obj.get("status")
            event.amount_cents = obj.get("amount")
            event.failure_message = obj.get("failure_reason")
        elif event_type.startswith("charge.dispute."):
            event.transaction_reference = obj.get("payment_intent") or obj.get("charge")
            event.dispute = {
                "id": obj.get("id"),
                "amount": obj.get("amount"),
                "reason": obj.get("reason"),
                "status": obj.get("status"),
                "created": obj.get("created"),
            }
        return event
