"""Draft-order creation and the order reads the payment routes build on."""
import logging
from typing import Callable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.db import utcnow
from core.errors import OrderNotFound, Unauthorized, ValidationFailed
from models.enums import FulfillmentStatus, OrderStatus, PaymentStatus
from models.order import Order
from models.order_item import OrderItem
from models.tenant import Tenant
from schemas.order import OrderCreate
from security.actor import Actor
from services.order_sync import OrderSynchronizer

logger = logging.getLogger(__name__)


def format_order_number(sequence: int) -> str:
    return f"ORD-{sequence:06d}"


def next_order_number(db: Session, tenant_id: int) -> str:
    # The increment is a single statement, so concurrent checkouts never share a number
    sequence = db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(order_sequence=Tenant.order_sequence + 1)
        .returning(Tenant.order_sequence)
        .execution_options(synchronize_session=False)
    ).scalar_one()
    return format_order_number(sequence)


def create_order(db: Session, tenant: Tenant, data: OrderCreate, actor: Actor,
                 clock: Callable = utcnow) -> Order:
    items: List[OrderItem] = []
    for line in data.items:
        total = line.quantity * line.unit_price_cents - line.discount_cents
        if total < 0:
            raise ValidationFailed(
                f"Discount on '{line.name}' exceeds its price",
                code="invalid_order_totals",
            )
        items.append(OrderItem(
            sku=line.sku,
            name=line.name,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            discount_cents=line.discount_cents,
            total_cents=total,
        ))

    now = clock()
    order = Order(
        tenant_id=tenant.id,
        order_number=next_order_number(db, tenant.id),
        order_status=OrderStatus.DRAFT.value,
        payment_status=PaymentStatus.PENDING.value,
        fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
        customer_email=data.customer_email,
        customer_name=data.customer_name,
        customer_phone=data.customer_phone,
        shipping_address=data.shipping_address,
        billing_address=data.billing_address or data.shipping_address,
        currency=data.currency.upper(),
        tax_cents=data.tax_cents,
        shipping_cents=data.shipping_cents,
        discount_cents=data.discount_cents,
        notes=data.notes,
        created_at=now,
        updated_at=now,
    )
    for item in items:
        order.add_item(item)
    if order.recalculate_totals() < 0:
        raise ValidationFailed(
            "Order total cannot be negative",
            code="invalid_order_totals",
            details={"subtotal": order.subtotal_cents, "discount": order.discount_cents},
        )

    db.add(order)
    db.flush()
    OrderSynchronizer(db, clock=clock).record_creation(order, actor)
    logger.info("Order %s created for tenant %s: %s %s", order.order_number, tenant.id, order.total_cents, order.currency)
    return order


def get_order(db: Session, order_id: int, tenant_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    if order.tenant_id != tenant_id:
        raise Unauthorized("Order belongs to another tenant")
    return order


def list_orders(db: Session, tenant_id: int, status: Optional[str] = None, payment_status: Optional[str] = None,
                page: int = 1, limit: int = 20) -> Tuple[List[Order], int]:
    query = db.query(Order).filter(Order.tenant_id == tenant_id)
    if status:
        query = query.filter(Order.order_status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)
    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total
