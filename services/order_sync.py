"""
Order Synchronizer.

Keeps an order's commercial status consistent with payment events and guards
manual status changes. Every call appends exactly one history row; status
writes are conditional on the status the caller observed, so two instances
racing on the same order cannot both win.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from core.db import utcnow
from core.errors import InvalidTransition, OrderStatusConflict, ValidationFailed
from models.enums import FulfillmentStatus, OrderStatus, PaymentEvent, PaymentStatus
from models.order import Order
from models.order_status_history import OrderStatusHistory
from security.actor import Actor

logger = logging.getLogger(__name__)

S = OrderStatus

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.DRAFT: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PAID, S.CANCELLED}),
    S.PAID: frozenset({S.PROCESSING, S.CANCELLED, S.REFUNDED}),
    S.PROCESSING: frozenset({S.SHIPPED, S.CANCELLED, S.REFUNDED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.CANCELLED, S.REFUNDED}),
    S.DELIVERED: frozenset({S.CANCELLED, S.REFUNDED}),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}

# Re-reads of a concurrently changed order before a payment event gives up
PAYMENT_SYNC_ATTEMPTS = 5

# Order payment statuses a failed or cancelled attempt may overwrite; captured money stays visible
_SUPERSEDABLE_PAYMENT_STATUSES = {
    PaymentStatus.PENDING.value,
    PaymentStatus.AUTHORIZED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
}


@dataclass(frozen=True)
class PaymentEffect:
    payment_status: PaymentStatus
    order_path: Dict[OrderStatus, Tuple[OrderStatus, ...]]
    reason: str
    only_supersedes_open: bool = False


_REFUND_PATH = {status: (S.REFUNDED,) for status in (S.PAID, S.PROCESSING, S.SHIPPED, S.DELIVERED)}

PAYMENT_EVENT_EFFECTS: Dict[PaymentEvent, PaymentEffect] = {
    PaymentEvent.AUTHORIZED: PaymentEffect(PaymentStatus.AUTHORIZED, {}, "Payment authorized"),
    PaymentEvent.CAPTURED: PaymentEffect(
        PaymentStatus.PAID,
        {S.DRAFT: (S.CONFIRMED, S.PAID), S.CONFIRMED: (S.PAID,)},
        "Payment captured",
    ),
    PaymentEvent.PARTIALLY_REFUNDED: PaymentEffect(PaymentStatus.PARTIALLY_REFUNDED, {}, "Payment partially refunded"),
    PaymentEvent.REFUNDED: PaymentEffect(PaymentStatus.REFUNDED, _REFUND_PATH, "Payment refunded"),
    PaymentEvent.FAILED: PaymentEffect(PaymentStatus.FAILED, {}, "Payment failed", only_supersedes_open=True),
    PaymentEvent.CANCELLED: PaymentEffect(PaymentStatus.CANCELLED, {}, "Payment cancelled", only_supersedes_open=True),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return OrderStatus(to_status) in ORDER_TRANSITIONS[OrderStatus(from_status)]


class OrderSynchronizer:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def apply_payment_event(
        self,
        order: Order,
        event: PaymentEvent,
        actor: Actor,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> OrderStatusHistory:
        """Record a payment event on the order.

        The money has already moved when this runs, so a stale order status is
        re-read and the effect recomputed instead of failing the caller.
        """
        effect = PAYMENT_EVENT_EFFECTS[event]
        for attempt in range(1, PAYMENT_SYNC_ATTEMPTS + 1):
            from_status = OrderStatus(order.order_status)
            path = effect.order_path.get(from_status, ())

            if event in (PaymentEvent.CAPTURED, PaymentEvent.REFUNDED) and from_status.is_terminal:
                logger.warning(
                    "Order %s is %s; recording %s without changing its status",
                    order.order_number, from_status.value, event.value,
                )

            payment_status = effect.payment_status.value
            if effect.only_supersedes_open and order.payment_status not in _SUPERSEDABLE_PAYMENT_STATUSES:
                payment_status = order.payment_status

            try:
                return self._write(
                    order,
                    from_status=from_status,
                    path=path,
                    payment_status=payment_status,
                    actor=actor,
                    reason=reason or effect.reason,
                    notes=notes,
                    details={"payment_event": event.value, **(details or {})},
                )
            except OrderStatusConflict:
                if attempt == PAYMENT_SYNC_ATTEMPTS:
                    raise
                logger.info(
                    "Order %s changed while recording %s (attempt %s); re-reading it",
                    order.order_number, event.value, attempt,
                )
                self.db.refresh(order)

    def transition(
        self,
        order: Order,
        to_status: str,
        actor: Actor,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[OrderStatusHistory]:
        """Manual status change; returns None when the order is already in ``to_status``."""
        try:
            target = OrderStatus(to_status)
        except ValueError:
            raise ValidationFailed(f"Unknown order status '{to_status}'")
        current = OrderStatus(order.order_status)
        if target == current:
            return None
        if target not in ORDER_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Cannot move order {order.order_number} from {current.value} to {target.value}",
                details={
                    "from_status": current.value,
                    "to_status": target.value,
                    "allowed": sorted(s.value for s in ORDER_TRANSITIONS[current]),
                },
            )
        return self._write(
            order,
            from_status=current,
            path=(target,),
            payment_status=order.payment_status,
            actor=actor,
            reason=reason or "Status updated",
            notes=notes,
        )

    def record_creation(self, order: Order, actor: Actor) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order.id,
            from_status=None,
            to_status=order.order_status,
            payment_status=order.payment_status,
            actor_id=actor.id,
            actor_name=actor.name,
            reason="Order created",
            created_at=self.clock(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def _write(
        self,
        order: Order,
        from_status: OrderStatus,
        path: Tuple[OrderStatus, ...],
        payment_status: str,
        actor: Actor,
        reason: str,
        notes: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> OrderStatusHistory:
        now = self.clock()
        to_status = path[-1] if path else from_status
        values: Dict[str, Any] = {
            "order_status": to_status.value,
            "payment_status": payment_status,
            "updated_at": now,
        }
        for step in path:
            values.update(self._stamps_for(order, step, now))
        if payment_status == PaymentStatus.PAID.value and order.paid_at is None:
            values["paid_at"] = now

        result = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.order_status == from_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise OrderStatusConflict(
                f"Order {order.order_number} is no longer {from_status.value}",
                details={"expected_status": from_status.value},
            )
        for key, value in values.items():
            set_committed_value(order, key, value)

        entry = OrderStatusHistory(
            order_id=order.id,
            from_status=from_status.value,
            to_status=to_status.value,
            payment_status=payment_status,
            actor_id=actor.id,
            actor_name=actor.name,
            reason=reason,
            notes=notes,
            details=details or {},
            created_at=now,
        )
        self.db.add(entry)
        self.db.flush()

        if to_status != from_status:
            logger.info(
                "Order %s: %s -> %s (payment %s) by %s",
                order.order_number, from_status.value, to_status.value, payment_status, actor.name,
            )
        return entry

    @staticmethod
    def _stamps_for(order: Order, status: OrderStatus, now: datetime) -> Dict[str, Any]:
        if status == S.CONFIRMED and order.confirmed_at is None:
            return {"confirmed_at": now}
        if status == S.PAID and order.paid_at is None:
            return {"paid_at": now}
        if status == S.DELIVERED:
            return {"fulfilled_at": order.fulfilled_at or now, "fulfillment_status": FulfillmentStatus.FULFILLED.value}
        if status == S.CANCELLED and order.cancelled_at is None:
            return {"cancelled_at": now}
        if status == S.REFUNDED and order.refunded_at is None:
            return {"refunded_at": now}
        return {}
