import hashlib
import hmac
from typing import Any, Dict, Mapping, Optional

from models.enums import WebhookEventKind
from services.gateways.base import (
    GatewayDeclined,
    GatewayEvent,
    GatewayRefundResult,
    GatewayResult,
    HttpGateway,
    _metadata_payment_id,
)


def _refund_identifier(data: Dict[str, Any], default: Optional[str]) -> Optional[str]:
    value = data.get("id") or data.get("refund_reference")
    return str(value) if value else default


class PaystackGateway(HttpGateway):
    """Paystack over its REST API; amounts are already in minor units (kobo)."""

    name = "paystack"
    EVENT_KINDS = {
        "charge.success": WebhookEventKind.PAYMENT_SUCCEEDED,
        "refund.processed": WebhookEventKind.REFUND_SUCCEEDED,
        "refund.failed": WebhookEventKind.REFUND_FAILED,
        "refund.pending": WebhookEventKind.REFUND_UPDATED,
        "refund.processing": WebhookEventKind.REFUND_UPDATED,
        "charge.dispute.create": WebhookEventKind.DISPUTE_OPENED,
        "charge.dispute.remind": WebhookEventKind.DISPUTE_OPENED,
        "charge.dispute.resolve": WebhookEventKind.DISPUTE_CLOSED,
    }

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _data_or_decline(self, resp: Dict[str, Any]) -> Dict[str, Any]:
        data = resp.get("data") or {}
        if not resp.get("status") or data.get("status") not in ("success", None):
            raise GatewayDeclined(
                code=str(data.get("status") or "declined"),
                message=data.get("gateway_response") or resp.get("message") or "Paystack declined the transaction",
                response=resp,
            )
        return data

    def _charge_payload(self, amount_cents: int, currency: str, payment_method: Dict[str, Any],
                        metadata: Dict[str, Any], reference: str) -> Dict[str, Any]:
        return {
            "email": metadata.get("customer_email"),
            "amount": amount_cents,
            "authorization_code": payment_method["token"],
            "reference": reference,
            "currency": currency,
            "metadata": metadata,
        }

    def authorize(self, amount_cents, currency, payment_method, metadata, idempotency_key) -> GatewayResult:
        resp = self._post(
            "/preauthorization/reserve_authorization",
            json=self._charge_payload(amount_cents, currency, payment_method, metadata, idempotency_key),
        )
        data = self._data_or_decline(resp)
        reference = data.get("reference") or idempotency_key
        return GatewayResult(
            transaction_id=reference,
            authorization_id=reference,
            gateway_fee_cents=int(data.get("fees") or 0),
            amount_cents=data.get("amount"),
            status=data.get("status"),
            raw=resp,
        )

    def capture(self, authorization_id, amount_cents, currency, idempotency_key) -> GatewayResult:
        resp = self._post(
            "/preauthorization/capture",
            json={"reference": authorization_id, "amount": amount_cents, "currency": currency},
        )
        data = self._data_or_decline(resp)
        return GatewayResult(
            transaction_id=data.get("reference") or authorization_id,
            authorization_id=authorization_id,
            gateway_fee_cents=int(data.get("fees") or 0),
            amount_cents=data.get("amount"),
            status=data.get("status"),
            raw=resp,
        )

    def charge(self, amount_cents, currency, payment_method, metadata, idempotency_key) -> GatewayResult:
        resp = self._post(
            "/transaction/charge_authorization",
            json=self._charge_payload(amount_cents, currency, payment_method, metadata, idempotency_key),
        )
        data = self._data_or_decline(resp)
        return GatewayResult(
            transaction_id=data.get("reference") or idempotency_key,
            gateway_fee_cents=int(data.get("fees") or 0),
            amount_cents=data.get("amount"),
            status=data.get("status"),
            raw=resp,
        )

    def refund(self, transaction_id, amount_cents, reason, idempotency_key) -> GatewayRefundResult:
        resp = self._post(
            "/refund",
            json={"transaction": transaction_id, "amount": amount_cents, "merchant_note": reason or ""},
        )
        if not resp.get("status"):
            raise GatewayDeclined(code="refund_rejected", message=resp.get("message") or "Refund rejected", response=resp)
        data = resp.get("data") or {}
        if data.get("status") == "failed":
            raise GatewayDeclined(code="refund_failed", message=resp.get("message") or "Refund failed", response=resp)
        return GatewayRefundResult(
            refund_id=_refund_identifier(data, idempotency_key),
            amount_cents=int(data.get("amount") or amount_cents),
            status=data.get("status") or "pending",
            raw=resp,
        )

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        signature = {k.lower(): v for k, v in headers.items()}.get("x-paystack-signature", "")
        if not self.secret_key or not signature:
            return False
        expected = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_event(self, payload: Dict[str, Any]) -> GatewayEvent:
        event_type = payload.get("event")
        data = payload.get("data")
        if not event_type or not isinstance(data, dict):
            raise ValueError("Paystack event must carry 'event' and 'data'")

        natural_id = data.get("id") or data.get("refund_reference") or data.get("reference")
        if natural_id is None:
            raise ValueError("Paystack event has no identifier")

        kind = self.event_kind(event_type)
        transaction = data.get("transaction") if isinstance(data.get("transaction"), dict) else {}
        event = GatewayEvent(
            event_id=f"{event_type}:{natural_id}",
            event_type=event_type,
            kind=kind,
            transaction_reference=data.get("reference") or data.get("transaction_reference") or transaction.get("reference"),
            payment_id=_metadata_payment_id(data.get("metadata") or transaction.get("metadata")),
            amount_cents=data.get("amount"),
            gateway_fee_cents=data.get("fees"),
        )
        if event_type.startswith("refund."):
            # Same precedence as refund(): the Paystack refund id, then the bank reference
            event.refund_reference = _refund_identifier(data, None)
            event.refund_aliases = tuple(
                str(value) for value in (data.get("id"), data.get("refund_reference"))
                if value and str(value) != event.refund_reference
            )
            event.refund_status = data.get("status")
            event.failure_message = data.get("failure_reason")
            # A refund event's reference is the original transaction, not the refund
            event.transaction_reference = data.get("transaction_reference") or transaction.get("reference")
        elif kind in (WebhookEventKind.DISPUTE_OPENED, WebhookEventKind.DISPUTE_CLOSED):
            event.dispute = {
                "id": data.get("id"),
                "amount": data.get("refund_amount"),
                "status": data.get("status"),
                "reason": data.get("category") or data.get("reason"),
                "resolution": data.get("resolution"),
            }
        return event
