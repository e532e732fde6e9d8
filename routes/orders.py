from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from core.tenancy import TenantContext, get_tenant_context
from schemas.order import OrderCreate, OrderDetailOut, OrderListOut, OrderUpdateRequest
from services import checkout
from services.order_sync import OrderSynchronizer

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/", response_model=OrderListOut)
def list_orders(
    status: Optional[str] = Query(default=None),
    payment_status: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
):
    orders, total = checkout.list_orders(db, ctx.tenant_id, status, payment_status, page, limit)
    return {"success": True, "orders": orders, "page": page, "limit": limit, "total": total}


@router.get("/{order_id}", response_model=OrderDetailOut)
def get_order(order_id: int, ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)):
    return checkout.get_order(db, order_id, ctx.tenant_id)


@router.post("/", response_model=OrderDetailOut, status_code=201)
def create_order(data: OrderCreate, ctx: TenantContext = Depends(get_tenant_context), db: Session = Depends(get_db)):
    order = checkout.create_order(db, ctx.tenant, data, ctx.actor)
    db.commit()
    db.refresh(order)
    return order


@router.patch("/{order_id}", response_model=OrderDetailOut)
def update_order(
    order_id: int,
    data: OrderUpdateRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    db: Session = Depends(get_db),
):
    """Status and notes update; status changes go through the transition table."""
    order = checkout.get_order(db, order_id, ctx.tenant_id)
    if data.notes is not None:
        order.notes = data.notes
    if data.internal_notes is not None:
        order.internal_notes = data.internal_notes
    db.flush()

    if data.order_status:
        OrderSynchronizer(db).transition(order, data.order_status, ctx.actor, reason=data.reason, notes=data.notes)
    db.commit()
    db.refresh(order)
    return order
