"""
Payment Ledger.

Owns the Payment lifecycle::

    pending -> authorized -> paid -> partially_refunded -> refunded
    pending/authorized -> failed | cancelled

Every money-moving transition is a conditional UPDATE checked on its row
count; nothing here relies on in-process locks. A pending Payment (or Refund)
row is committed before the gateway is called, so a lost gateway response can
still be reconciled from the gateway's webhook.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from core.config import settings
from core.db import utcnow
from core.errors import (
    AlreadyCaptured,
    AuthorizationExpired,
    AuthorizationFailed,
    CaptureFailed,
    ChargeFailed,
    OrderNotFound,
    OrderNotPayable,
    PaymentInProgress,
    PaymentNotFound,
    PaymentNotRefundable,
    PaymentOutcomeUnknown,
    RefundExceedsBalance,
    RefundFailed,
    RefundNotFound,
    Unauthorized,
    ValidationFailed,
)
from models.enums import (
    CAPTURED_STATUSES,
    OPEN_STATUSES,
    REFUNDABLE_STATUSES,
    OrderStatus,
    PaymentEvent,
    PaymentStatus,
    RefundStatus,
)
from models.order import Order
from models.payment import Payment
from models.refund import Refund
from security.actor import SYSTEM_ACTOR, Actor
from services.fees import FeeCalculator
from services.gateways import GatewayRegistry
from services.gateways.base import GatewayDeclined, GatewayEvent, GatewayTransportError
from services.order_sync import OrderSynchronizer

logger = logging.getLogger(__name__)


def idempotency_key(order_id: int, operation: str, attempt: Union[int, str]) -> str:
    """Gateway idempotency token for one logical operation on an order."""
    return f"ord{order_id}-{operation}-{attempt}"


class PaymentLedger:
    def __init__(
        self,
        db: Session,
        gateways: GatewayRegistry,
        fee_calculator: Optional[FeeCalculator] = None,
        order_sync: Optional[OrderSynchronizer] = None,
        clock: Callable[[], datetime] = utcnow,
        hold_days: Optional[int] = None,
    ):
        self.db = db
        self.gateways = gateways
        self.clock = clock
        self.fees = fee_calculator or FeeCalculator(db)
        self.order_sync = order_sync or OrderSynchronizer(db, clock=clock)
        self.hold = timedelta(days=hold_days if hold_days is not None else settings.AUTHORIZATION_HOLD_DAYS)

    # Lookups

    def get_order(self, order_id: int, tenant_id: Optional[int] = None) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        self._check_tenant(order.tenant_id, tenant_id)
        return order

    def get_payment(self, payment_id: int, tenant_id: Optional[int] = None) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        self._check_tenant(payment.tenant_id, tenant_id)
        return payment

    def list_payments(self, order_id: int, tenant_id: Optional[int] = None) -> List[Payment]:
        order = self.get_order(order_id, tenant_id)
        return (
            self.db.query(Payment)
            .filter(Payment.order_id == order.id)
            .order_by(Payment.created_at.asc(), Payment.id.asc())
            .all()
        )

    def get_refund(self, refund_id: int, tenant_id: Optional[int] = None) -> Refund:
        refund = self.db.get(Refund, refund_id)
        if refund is None:
            raise RefundNotFound(f"Refund {refund_id} not found")
        self._check_tenant(refund.tenant_id, tenant_id)
        return refund

    def list_refunds(self, tenant_id: int, status: Optional[str] = None, payment_id: Optional[int] = None,
                     page: int = 1, limit: int = 20) -> Tuple[List[Refund], int]:
        """Newest first, scoped to one tenant."""
        query = self.db.query(Refund).filter(Refund.tenant_id == tenant_id)
        if status:
            query = query.filter(Refund.status == status)
        if payment_id is not None:
            query = query.filter(Refund.payment_id == payment_id)
        total = query.count()
        refunds = (
            query.order_by(Refund.created_at.desc(), Refund.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return refunds, total

    @staticmethod
    def _check_tenant(owner_tenant_id: int, tenant_id: Optional[int]) -> None:
        # tenant_id=None is the system path (webhooks, workers)
        if tenant_id is not None and owner_tenant_id != tenant_id:
            raise Unauthorized("Resource belongs to another tenant")

    # Authorize / charge

    def authorize(
        self,
        order_id: int,
        payment_method: Dict[str, Any],
        gateway_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        tenant_id: Optional[int] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Payment:
        return self._open_payment("authorize", order_id, payment_method, gateway_type, metadata, tenant_id, actor)

    def charge(
        self,
        order_id: int,
        payment_method: Dict[str, Any],
        gateway_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        tenant_id: Optional[int] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Payment:
        return self._open_payment("charge", order_id, payment_method, gateway_type, metadata, tenant_id, actor)

    def _open_payment(self, operation, order_id, payment_method, gateway_type, metadata, tenant_id, actor) -> Payment:
        adapter = self.gateways.get(gateway_type)
        if not payment_method or not payment_method.get("token"):
            raise ValidationFailed("A tokenized payment method is required", details={"field": "paymentMethod.token"})
        order = self.get_order(order_id, tenant_id)
        self._ensure_payable(order)

        attempt = self.db.query(func.count(Payment.id)).filter(Payment.order_id == order.id).scalar() or 0
        payment = Payment(
            tenant_id=order.tenant_id,
            order_id=order.id,
            amount_cents=order.total_cents,
            authorized_amount_cents=order.total_cents,
            refunded_cents=0,
            currency=order.currency,
            payment_method=payment_method.get("type") or "card",
            status=PaymentStatus.PENDING.value,
            gateway_type=adapter.name,
            idempotency_key=idempotency_key(order.id, operation, attempt),
            details=dict(metadata or {}),
        )
        self.db.add(payment)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            raise PaymentInProgress(details={"order_id": order_id})
        self.db.commit()

        gateway_metadata = {
            **(metadata or {}),
            "payment_id": payment.id,
            "order_id": order.id,
            "order_number": order.order_number,
            "tenant_id": order.tenant_id,
            "customer_email": order.customer_email,
        }
        call = adapter.authorize if operation == "authorize" else adapter.charge
        try:
            result = call(payment.amount_cents, payment.currency, payment_method, gateway_metadata, payment.idempotency_key)
        except GatewayDeclined as exc:
            logger.warning(
                "%s declined %s of order %s (payment %s): %s %s",
                adapter.name, operation, order.order_number, payment.id, exc.code, exc.message,
            )
            self._fail_open_payment(payment, order, exc.code, exc.message, exc.response, actor)
            error = AuthorizationFailed if operation == "authorize" else ChargeFailed
            raise error(exc.message, gateway_code=exc.code, details={"payment_id": payment.id})
        except GatewayTransportError as exc:
            logger.error(
                "%s %s of order %s (payment %s) has an unknown outcome: %s",
                adapter.name, operation, order.order_number, payment.id, exc,
            )
            raise PaymentOutcomeUnknown(details={"payment_id": payment.id, "operation": operation})

        now = self.clock()
        fees = self.fees.calculate(payment.amount_cents, result.gateway_fee_cents, order.tenant_id)
        values: Dict[str, Any] = {
            "gateway_transaction_id": result.transaction_id,
            "gateway_authorization_id": result.authorization_id or result.transaction_id,
            "gateway_response": result.raw,
            "authorized_at": now,
            **fees.to_payment_fields(),
        }
        if operation == "authorize":
            values.update(status=PaymentStatus.AUTHORIZED.value, authorization_expires_at=now + self.hold)
            event = PaymentEvent.AUTHORIZED
        else:
            values.update(status=PaymentStatus.PAID.value, captured_at=now)
            event = PaymentEvent.CAPTURED

        if not self._cas(payment, (PaymentStatus.PENDING.value,), values):
            # The gateway's webhook got here first and already applied the outcome
            self.db.refresh(payment)
            self.db.commit()
            logger.info("Payment %s was settled by webhook before the %s response", payment.id, operation)
            return payment

        self.order_sync.apply_payment_event(order, event, actor, details={"payment_id": payment.id})
        self.db.commit()
        logger.info(
            "Payment %s %s: %s %s on order %s via %s (platform fee %s, net %s)",
            payment.id, payment.status, payment.amount_cents, payment.currency, order.order_number,
            adapter.name, payment.platform_fee_cents, payment.net_amount_cents,
        )
        return payment

    def _ensure_payable(self, order: Order) -> None:
        if OrderStatus(order.order_status).is_terminal:
            raise OrderNotPayable(f"Order {order.order_number} is {order.order_status}")
        if order.payment_status in CAPTURED_STATUSES:
            raise OrderNotPayable(f"Order {order.order_number} is already paid")
        if order.total_cents <= 0:
            raise OrderNotPayable(f"Order {order.order_number} has nothing to pay")
        pending = (
            self.db.query(Payment.id)
            .filter(Payment.order_id == order.id, Payment.status == PaymentStatus.PENDING.value)
            .first()
        )
        if pending is not None:
            raise PaymentInProgress(details={"payment_id": pending[0]})

    def _fail_open_payment(self, payment, order, code, message, response, actor) -> None:
        values = {
            "status": PaymentStatus.FAILED.value,
            "failed_at": self.clock(),
            "error_code": code,
            "error_message": message,
            "gateway_response": response,
        }
        if self._cas(payment, (PaymentStatus.PENDING.value,), values):
            self.order_sync.apply_payment_event(
                order, PaymentEvent.FAILED, actor,
                reason=f"Payment failed: {code}", details={"payment_id": payment.id},
            )
        self.db.commit()

    # Capture

    def capture(
        self,
        order_id: int,
        payment_id: Optional[int] = None,
        amount_cents: Optional[int] = None,
        *,
        tenant_id: Optional[int] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Payment:
        order = self.get_order(order_id, tenant_id)
        payment = self._capture_target(order, payment_id)

        now = self.clock()
        if payment.authorization_expired(now):
            raise AuthorizationExpired(
                f"Authorization for payment {payment.id} expired at {payment.authorization_expires_at.isoformat()}Z",
                details={"payment_id": payment.id},
            )

        amount = payment.authorized_amount_cents if amount_cents is None else amount_cents
        if amount <= 0 or amount > payment.authorized_amount_cents:
            raise ValidationFailed(
                "Capture amount must be positive and no more than the authorized amount",
                code="invalid_amount",
                details={"authorized_amount": payment.authorized_amount_cents, "requested": amount},
            )

        token = uuid.uuid4().hex
        claimed = self._cas(
            payment, (PaymentStatus.AUTHORIZED.value,), {"capture_token": token},
            Payment.capture_token.is_(None),
        )
        if not claimed:
            self.db.refresh(payment)
            raise AlreadyCaptured(
                f"Payment {payment.id} has already been captured or is being captured",
                details={"payment_id": payment.id, "status": payment.status},
            )
        self.db.commit()

        adapter = self.gateways.get(payment.gateway_type)
        try:
            result = adapter.capture(
                payment.gateway_authorization_id, amount, payment.currency,
                # A declined capture releases the claim; the next claim gets a fresh key
                idempotency_key(order.id, "capture", f"{payment.id}-{token[:12]}"),
            )
        except GatewayDeclined as exc:
            logger.warning("%s declined capture of payment %s: %s %s", adapter.name, payment.id, exc.code, exc.message)
            self._cas(
                payment, (PaymentStatus.AUTHORIZED.value,),
                {"capture_token": None, "error_code": exc.code, "error_message": exc.message},
                Payment.capture_token == token,
            )
            self.db.commit()
            raise CaptureFailed(exc.message, gateway_code=exc.code, details={"payment_id": payment.id})
        except GatewayTransportError as exc:
            # The claim stays held until the webhook reports the outcome
            logger.error("%s capture of payment %s has an unknown outcome: %s", adapter.name, payment.id, exc)
            raise PaymentOutcomeUnknown(details={"payment_id": payment.id, "operation": "capture"})

        fees = self.fees.calculate(amount, result.gateway_fee_cents, payment.tenant_id)
        values = {
            "status": PaymentStatus.PAID.value,
            "amount_cents": amount,
            "captured_at": now,
            "gateway_transaction_id": result.transaction_id or payment.gateway_transaction_id,
            "gateway_response": result.raw,
            **fees.to_payment_fields(),
        }
        if not self._cas(payment, (PaymentStatus.AUTHORIZED.value,), values, Payment.capture_token == token):
            self.db.refresh(payment)
            self.db.commit()
            logger.info("Payment %s was captured by webhook before the capture response", payment.id)
            return payment

        self.order_sync.apply_payment_event(order, PaymentEvent.CAPTURED, actor, details={"payment_id": payment.id})
        self.db.commit()
        logger.info(
            "Payment %s captured: %s %s on order %s (platform fee %s, net %s)",
            payment.id, amount, payment.currency, order.order_number,
            payment.platform_fee_cents, payment.net_amount_cents,
        )
        return payment

    def _capture_target(self, order: Order, payment_id: Optional[int]) -> Payment:
        if payment_id is not None:
            payment = self.db.get(Payment, payment_id)
            if payment is None or payment.order_id != order.id:
                raise PaymentNotFound(f"Payment {payment_id} not found on order {order.order_number}")
            if payment.status in CAPTURED_STATUSES:
                raise AlreadyCaptured(f"Payment {payment.id} has already been captured", details={"payment_id": payment.id})
            if payment.status != PaymentStatus.AUTHORIZED.value:
                raise PaymentNotFound(
                    f"Payment {payment.id} is {payment.status}, not authorized",
                    details={"payment_id": payment.id, "status": payment.status},
                )
            return payment

        # Latest authorization wins; equal timestamps fall back to the newest row
        payment = (
            self.db.query(Payment)
            .filter(Payment.order_id == order.id, Payment.status == PaymentStatus.AUTHORIZED.value)
            .order_by(Payment.authorized_at.desc(), Payment.id.desc())
            .first()
        )
        if payment is None:
            raise PaymentNotFound(f"No authorized payment on order {order.order_number}")
        return payment

    # Refund

    def refund(
        self,
        payment_id: int,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        *,
        tenant_id: Optional[int] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Tuple[Payment, Refund]:
        payment = self.get_payment(payment_id, tenant_id)
        if payment.status not in REFUNDABLE_STATUSES:
            raise PaymentNotRefundable(
                f"Payment {payment.id} is {payment.status}",
                details={"payment_id": payment.id, "status": payment.status},
            )
        if amount_cents is not None and amount_cents <= 0:
            raise ValidationFailed("Refund amount must be positive", code="invalid_amount")

        amount = payment.refundable_cents if amount_cents is None else amount_cents
        if amount <= 0 or amount > payment.refundable_cents:
            raise RefundExceedsBalance(
                details={"payment_id": payment.id, "requested": amount, "refundable": payment.refundable_cents},
            )
        if not self._reserve_refund(payment, amount):
            self.db.refresh(payment)
            if payment.status not in REFUNDABLE_STATUSES:
                raise PaymentNotRefundable(details={"payment_id": payment.id, "status": payment.status})
            raise RefundExceedsBalance(
                details={"payment_id": payment.id, "requested": amount, "refundable": payment.refundable_cents},
            )

        refund = Refund(
            payment_id=payment.id,
            order_id=payment.order_id,
            tenant_id=payment.tenant_id,
            amount_cents=amount,
            reason=reason,
            status=RefundStatus.PENDING.value,
            is_partial=amount < payment.amount_cents,
            initiated_by=actor.id,
        )
        self.db.add(refund)
        self.db.flush()
        self.db.commit()

        adapter = self.gateways.get(payment.gateway_type)
        try:
            result = adapter.refund(
                payment.gateway_transaction_id, amount, reason,
                idempotency_key(payment.order_id, "refund", refund.id),
            )
        except GatewayDeclined as exc:
            logger.warning("%s declined refund %s of payment %s: %s %s", adapter.name, refund.id, payment.id, exc.code, exc.message)
            self._fail_refund(payment, refund, exc.code, exc.message, exc.response)
            self.db.commit()
            raise RefundFailed(exc.message, gateway_code=exc.code, details={"payment_id": payment.id, "refund_id": refund.id})
        except GatewayTransportError as exc:
            # The reservation stays held until the webhook reports the outcome
            logger.error("%s refund %s of payment %s has an unknown outcome: %s", adapter.name, refund.id, payment.id, exc)
            raise PaymentOutcomeUnknown(details={"payment_id": payment.id, "refund_id": refund.id, "operation": "refund"})

        self._complete_refund(payment, refund, actor, gateway_refund_id=result.refund_id, raw=result.raw)
        self.db.commit()
        return payment, refund

    def _reserve_refund(self, payment: Payment, amount: int) -> bool:
        result = self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status.in_(REFUNDABLE_STATUSES),
                Payment.refunded_cents + amount <= Payment.amount_cents,
            )
            .values(refunded_cents=Payment.refunded_cents + amount, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.expire(payment, ["refunded_cents", "updated_at"])
        return True

    def _release_refund(self, payment: Payment, amount: int) -> None:
        self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.refunded_cents >= amount)
            .values(refunded_cents=Payment.refunded_cents - amount, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.expire(payment, ["refunded_cents", "updated_at"])

    def _complete_refund(self, payment: Payment, refund: Refund, actor: Actor,
                         gateway_refund_id: Optional[str] = None, raw: Optional[Dict[str, Any]] = None) -> bool:
        now = self.clock()
        values: Dict[str, Any] = {"status": RefundStatus.COMPLETED.value, "completed_at": now}
        if gateway_refund_id:
            values["gateway_refund_id"] = gateway_refund_id
        if raw is not None:
            values["gateway_response"] = raw
        result = self.db.execute(
            update(Refund)
            .where(Refund.id == refund.id, Refund.status == RefundStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        for key, value in values.items():
            set_committed_value(refund, key, value)

        completed = (
            self.db.query(func.coalesce(func.sum(Refund.amount_cents), 0))
            .filter(Refund.payment_id == payment.id, Refund.status == RefundStatus.COMPLETED.value)
            .scalar()
        )
        fully = completed >= payment.amount_cents
        new_status = PaymentStatus.REFUNDED if fully else PaymentStatus.PARTIALLY_REFUNDED
        if payment.status != new_status.value:
            self._cas(payment, REFUNDABLE_STATUSES, {"status": new_status.value})

        order = self.db.get(Order, payment.order_id)
        event = PaymentEvent.REFUNDED if fully else PaymentEvent.PARTIALLY_REFUNDED
        self.order_sync.apply_payment_event(
            order, event, actor,
            reason=refund.reason or None,
            details={"payment_id": payment.id, "refund_id": refund.id, "amount": refund.amount_cents},
        )
        logger.info(
            "Refund %s completed: %s %s of payment %s (refunded %s of %s, payment %s)",
            refund.id, refund.amount_cents, payment.currency, payment.id, completed, payment.amount_cents, payment.status,
        )
        return True

    def _fail_refund(self, payment: Payment, refund: Refund, code: Optional[str], message: Optional[str],
                     raw: Optional[Dict[str, Any]] = None) -> bool:
        values = {"status": RefundStatus.FAILED.value, "error_code": code, "error_message": message}
        if raw is not None:
            values["gateway_response"] = raw
        result = self.db.execute(
            update(Refund)
            .where(Refund.id == refund.id, Refund.status == RefundStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        for key, value in values.items():
            set_committed_value(refund, key, value)
        self._release_refund(payment, refund.amount_cents)
        return True

    # Webhook-driven transitions. Each returns True when it changed state.

    def find_payment(self, gateway_type: str, payment_id: Optional[int] = None,
                     reference: Optional[str] = None) -> Optional[Payment]:
        if payment_id is not None:
            payment = self.db.get(Payment, payment_id)
            if payment is not None and payment.gateway_type == gateway_type:
                return payment
        if not reference:
            return None
        return (
            self.db.query(Payment)
            .filter(
                Payment.gateway_type == gateway_type,
                or_(
                    Payment.gateway_transaction_id == reference,
                    Payment.gateway_authorization_id == reference,
                    Payment.idempotency_key == reference,
                ),
            )
            .order_by(Payment.id.desc())
            .first()
        )

    def record_authorization(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        now = self.clock()
        amount = payment.amount_cents
        fees = self.fees.calculate(amount, event.gateway_fee_cents or 0, payment.tenant_id)
        values = {
            "status": PaymentStatus.AUTHORIZED.value,
            "authorized_at": now,
            "authorization_expires_at": now + self.hold,
            "gateway_transaction_id": payment.gateway_transaction_id or event.transaction_reference,
            "gateway_authorization_id": payment.gateway_authorization_id or event.transaction_reference,
            **fees.to_payment_fields(),
        }
        if not self._cas(payment, (PaymentStatus.PENDING.value,), values):
            return False
        self._sync_order(payment, PaymentEvent.AUTHORIZED, actor, event)
        return True

    def record_capture(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        now = self.clock()
        amount = payment.amount_cents
        if event.amount_cents and 0 < event.amount_cents <= payment.authorized_amount_cents:
            amount = event.amount_cents
        fees = self.fees.calculate(amount, event.gateway_fee_cents or payment.gateway_fee_cents or 0, payment.tenant_id)
        values = {
            "status": PaymentStatus.PAID.value,
            "amount_cents": amount,
            "authorized_at": payment.authorized_at or now,
            "captured_at": now,
            "gateway_transaction_id": payment.gateway_transaction_id or event.transaction_reference,
            **fees.to_payment_fields(),
        }
        if not self._cas(payment, OPEN_STATUSES, values):
            return False
        self._sync_order(payment, PaymentEvent.CAPTURED, actor, event)
        return True

    def record_failure(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        values = {
            "status": PaymentStatus.FAILED.value,
            "failed_at": self.clock(),
            "error_code": event.failure_code,
            "error_message": event.failure_message,
        }
        if not self._cas(payment, OPEN_STATUSES, values):
            return False
        logger.warning("Payment %s failed at the gateway: %s %s", payment.id, event.failure_code, event.failure_message)
        self._sync_order(payment, PaymentEvent.FAILED, actor, event)
        return True

    def record_cancellation(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        values = {"status": PaymentStatus.CANCELLED.value, "cancelled_at": self.clock()}
        if not self._cas(payment, OPEN_STATUSES, values):
            return False
        self._sync_order(payment, PaymentEvent.CANCELLED, actor, event)
        return True

    def complete_refund(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        refund = self._match_refund(payment, event)
        if refund is not None:
            if refund.status != RefundStatus.PENDING.value:
                return False
            return self._complete_refund(payment, refund, actor, gateway_refund_id=event.refund_reference)
        return self.record_external_refund(payment, event, actor)

    def fail_refund(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        refund = self._match_refund(payment, event)
        if refund is None:
            return False
        if refund.status == RefundStatus.COMPLETED.value:
            logger.warning("Ignoring failure report for completed refund %s of payment %s", refund.id, payment.id)
            return False
        failed = self._fail_refund(payment, refund, event.refund_status or "failed", event.failure_message)
        if failed:
            logger.warning("Refund %s of payment %s failed at the gateway: %s", refund.id, payment.id, event.failure_message)
        return failed

    def record_external_refund(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        """A refund issued outside the engine (e.g. from the gateway dashboard).

        A cumulative total from the gateway is authoritative. Without one, a
        report that matches a refund already completed here is taken to be
        that refund under another identifier.
        """
        if event.refunded_total_cents is not None:
            completed = (
                self.db.query(func.coalesce(func.sum(Refund.amount_cents), 0))
                .filter(Refund.payment_id == payment.id, Refund.status == RefundStatus.COMPLETED.value)
                .scalar()
            )
            amount = event.refunded_total_cents - completed
        else:
            amount = event.amount_cents or 0
            if amount > 0 and self._has_completed_refund(payment, amount, event.refund_reference):
                logger.warning(
                    "Not recording %s refund %s of %s on payment %s: a completed refund of that amount already exists",
                    payment.gateway_type, event.refund_reference, amount, payment.id,
                )
                return False
        if amount <= 0:
            return False
        if payment.status not in REFUNDABLE_STATUSES:
            raise PaymentNotRefundable(details={"payment_id": payment.id, "status": payment.status, "reported": amount})
        if not self._reserve_refund(payment, amount):
            raise RefundExceedsBalance(
                "Gateway reported a refund larger than the refundable balance",
                details={"payment_id": payment.id, "reported": amount},
            )
        refund = Refund(
            payment_id=payment.id,
            order_id=payment.order_id,
            tenant_id=payment.tenant_id,
            amount_cents=amount,
            reason="Refund issued at the gateway",
            status=RefundStatus.PENDING.value,
            is_partial=amount < payment.amount_cents,
            initiated_by=actor.id,
        )
        self.db.add(refund)
        self.db.flush()
        return self._complete_refund(payment, refund, actor, gateway_refund_id=event.refund_reference)

    def record_dispute(self, payment: Payment, event: GatewayEvent, actor: Actor = SYSTEM_ACTOR) -> bool:
        details = dict(payment.details or {})
        disputes = list(details.get("disputes") or [])
        disputes.append({**(event.dispute or {}), "event_type": event.event_type, "recorded_at": self.clock().isoformat()})
        details["disputes"] = disputes
        payment.details = details
        self.db.flush()
        logger.warning("Dispute %s recorded on payment %s: %s", event.event_type, payment.id, event.dispute)
        return True

    def _match_refund(self, payment: Payment, event: GatewayEvent) -> Optional[Refund]:
        references = [ref for ref in (event.refund_reference, *event.refund_aliases) if ref]
        if references:
            refund = (
                self.db.query(Refund)
                .filter(Refund.payment_id == payment.id, Refund.gateway_refund_id.in_(references))
                .order_by(Refund.id.asc())
                .first()
            )
            if refund is not None:
                return refund
        # A refund whose gateway response was lost has no reference yet
        query = self.db.query(Refund).filter(
            Refund.payment_id == payment.id,
            Refund.status == RefundStatus.PENDING.value,
            Refund.gateway_refund_id.is_(None),
        )
        if event.amount_cents:
            query = query.filter(Refund.amount_cents == event.amount_cents)
        return query.order_by(Refund.id.asc()).first()

    def _has_completed_refund(self, payment: Payment, amount: int, reference: Optional[str]) -> bool:
        query = self.db.query(Refund.id).filter(
            Refund.payment_id == payment.id,
            Refund.status == RefundStatus.COMPLETED.value,
            Refund.amount_cents == amount,
        )
        if reference:
            query = query.filter(or_(Refund.gateway_refund_id.is_(None), Refund.gateway_refund_id != reference))
        return query.first() is not None

    def _sync_order(self, payment: Payment, event: PaymentEvent, actor: Actor, gateway_event: GatewayEvent) -> None:
        order = self.db.get(Order, payment.order_id)
        self.order_sync.apply_payment_event(
            order, event, actor,
            details={"payment_id": payment.id, "gateway_event": gateway_event.event_type},
        )
        logger.info("Payment %s %s from %s webhook %s", payment.id, payment.status, payment.gateway_type, gateway_event.event_id)

    # Conditional writes

    def _cas(self, payment: Payment, expected: Iterable[str], values: Dict[str, Any], *conditions) -> bool:
        values = {**values, "updated_at": self.clock()}
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(tuple(expected)), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        for key, value in values.items():
            set_committed_value(payment, key, value)
        return True
