"""
Webhook Reconciler.

Verifies and stores gateway notifications, then replays them through the
Payment Ledger exactly as a local call would. The (gateway, event id) unique
key is the idempotency boundary: a redelivered event inserts nothing and is
acknowledged without being applied again.
"""
import json
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.db import insert_or_ignore, utcnow
from core.errors import ApiError, PaymentNotFound, SignatureVerificationFailed, ValidationFailed
from models.enums import WebhookEventKind
from models.payment import Payment
from models.webhook_event import WebhookEvent
from security.actor import Actor, gateway_actor
from services.gateways import GatewayRegistry
from services.gateways.base import GatewayEvent
from services.ledger import PaymentLedger

logger = logging.getLogger(__name__)

_REFUND_SUCCEEDED_STATES = {"succeeded", "processed", "completed"}
_REFUND_FAILED_STATES = {"failed", "canceled", "cancelled"}

Handler = Callable[[PaymentLedger, Payment, GatewayEvent, Actor], bool]


def _refund_updated(ledger: PaymentLedger, payment: Payment, event: GatewayEvent, actor: Actor) -> bool:
    state = (event.refund_status or "").lower()
    if state in _REFUND_SUCCEEDED_STATES:
        return ledger.complete_refund(payment, event, actor)
    if state in _REFUND_FAILED_STATES:
        return ledger.fail_refund(payment, event, actor)
    # pending / processing: nothing settled yet
    return False


K = WebhookEventKind

HANDLERS: Dict[WebhookEventKind, Optional[Handler]] = {
    K.PAYMENT_AUTHORIZED: PaymentLedger.record_authorization,
    K.PAYMENT_SUCCEEDED: PaymentLedger.record_capture,
    K.PAYMENT_FAILED: PaymentLedger.record_failure,
    K.PAYMENT_CANCELLED: PaymentLedger.record_cancellation,
    K.REFUND_SUCCEEDED: PaymentLedger.complete_refund,
    K.REFUND_FAILED: PaymentLedger.fail_refund,
    K.REFUND_UPDATED: _refund_updated,
    K.DISPUTE_OPENED: PaymentLedger.record_dispute,
    K.DISPUTE_CLOSED: PaymentLedger.record_dispute,
    K.UNHANDLED: None,
}


@dataclass
class WebhookReceipt:
    webhook_event_id: int
    event_id: str
    event_type: str
    duplicate: bool = False
    processed: bool = False
    queued: bool = False


class WebhookReconciler:
    def __init__(
        self,
        db: Session,
        gateways: GatewayRegistry,
        ledger: Optional[PaymentLedger] = None,
        enqueue: Optional[Callable[[int], None]] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.ledger = ledger or PaymentLedger(db, gateways)
        self.enqueue = enqueue

    def ingest(self, gateway_type: str, body: bytes, headers: Mapping[str, str]) -> WebhookReceipt:
        adapter = self.gateways.get(gateway_type)
        if not adapter.verify_webhook(body, headers):
            logger.warning("Rejected %s webhook with an invalid signature", adapter.name)
            raise SignatureVerificationFailed()

        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationFailed("Webhook body is not valid JSON", code="invalid_payload")
        if not isinstance(payload, dict):
            raise ValidationFailed("Webhook body must be a JSON object", code="invalid_payload")
        try:
            event = adapter.parse_event(payload)
        except ValueError as exc:
            raise ValidationFailed(str(exc), code="invalid_payload")

        inserted = insert_or_ignore(
            self.db,
            WebhookEvent,
            {
                "gateway_type": adapter.name,
                "event_id": event.event_id,
                "event_type": event.event_type,
                "payload": payload,
                "processed": False,
                "processing_attempts": 0,
                "received_at": utcnow(),
            },
            ("gateway_type", "event_id"),
        )
        self.db.commit()
        row = (
            self.db.query(WebhookEvent)
            .filter(WebhookEvent.gateway_type == adapter.name, WebhookEvent.event_id == event.event_id)
            .one()
        )
        receipt = WebhookReceipt(webhook_event_id=row.id, event_id=row.event_id, event_type=row.event_type)

        if not inserted:
            logger.info("Duplicate %s webhook %s acknowledged without reprocessing", adapter.name, event.event_id)
            receipt.duplicate = True
            receipt.processed = row.processed
            return receipt

        logger.info("Stored %s webhook %s (%s)", adapter.name, event.event_id, event.event_type)
        if self.enqueue is not None:
            try:
                self.enqueue(row.id)
                receipt.queued = True
                return receipt
            except Exception as exc:
                logger.warning("Could not queue webhook %s, processing inline: %s", event.event_id, exc)

        try:
            receipt.processed = self.process(row.id)
        except Exception:
            # The stored row carries the error; the gateway still gets its acknowledgement
            logger.exception("Processing %s webhook %s failed", adapter.name, event.event_id)
        return receipt

    def process(self, webhook_event_id: int) -> bool:
        """Apply a stored event; returns True once the event is processed."""
        row = self.db.get(WebhookEvent, webhook_event_id)
        if row is None:
            logger.error("Webhook event row %s does not exist", webhook_event_id)
            return False
        if row.processed:
            return True

        self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == row.id, WebhookEvent.processed.is_(False))
            .values(processing_attempts=WebhookEvent.processing_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        adapter = self.gateways.get(row.gateway_type)
        event = adapter.parse_event(row.payload)
        handler = HANDLERS[event.kind]
        actor = gateway_actor(row.gateway_type)

        try:
            applied = False
            if handler is not None:
                payment = self.ledger.find_payment(row.gateway_type, event.payment_id, event.transaction_reference)
                if payment is None:
                    raise PaymentNotFound(
                        f"No payment matches {row.gateway_type} event {event.event_id} "
                        f"(payment_id={event.payment_id}, reference={event.transaction_reference})"
                    )
                applied = handler(self.ledger, payment, event, actor)
        except ApiError as exc:
            self.db.rollback()
            self._record_error(row.id, exc.message)
            logger.warning("Webhook %s not applied: %s", event.event_id, exc.message)
            return False
        except Exception as exc:
            self.db.rollback()
            self._record_error(row.id, f"{type(exc).__name__}: {exc}")
            raise

        result = self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == row.id, WebhookEvent.processed.is_(False))
            .values(processed=True, processed_at=utcnow(), error_message=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Another worker finished this event first; its changes stand
            self.db.rollback()
            return True
        self.db.commit()
        self.db.expire(row)
        logger.info(
            "Webhook %s (%s -> %s) processed%s",
            event.event_id, event.event_type, event.kind.value, "" if applied else " with no state change",
        )
        return True

    def _record_error(self, row_id: int, message: str) -> None:
        self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == row_id, WebhookEvent.processed.is_(False))
            .values(error_message=message[:2000])
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
