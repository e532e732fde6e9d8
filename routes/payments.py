from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from core.tenancy import TenantContext, get_tenant_context
from schemas.payment import (
    AuthorizeRequest,
    CaptureRequest,
    ChargeRequest,
    PaymentDetailResponse,
    PaymentListResponse,
    PaymentResponse,
    RefundDetailResponse,
    RefundListResponse,
    RefundRequest,
    RefundResponse,
)
from services.gateways import GatewayRegistry, get_gateway_registry
from services.ledger import PaymentLedger

router = APIRouter(tags=["payments"])


def get_ledger(db: Session = Depends(get_db), gateways: GatewayRegistry = Depends(get_gateway_registry)) -> PaymentLedger:
    return PaymentLedger(db, gateways)


def _payment_body(payment):
    return {"success": True, "payment": payment, "fees": payment}


@router.post("/orders/{order_id}/payments/authorize", response_model=PaymentResponse)
def authorize_payment(
    order_id: int,
    data: AuthorizeRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    payment = ledger.authorize(
        order_id, data.payment_method.model_dump(), data.gateway_type, data.metadata,
        tenant_id=ctx.tenant_id, actor=ctx.actor,
    )
    return _payment_body(payment)


@router.post("/orders/{order_id}/payments/capture", response_model=PaymentResponse)
def capture_payment(
    order_id: int,
    data: CaptureRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    payment = ledger.capture(order_id, data.payment_id, data.amount, tenant_id=ctx.tenant_id, actor=ctx.actor)
    return _payment_body(payment)


@router.post("/orders/{order_id}/payments/charge", response_model=PaymentResponse)
def charge_payment(
    order_id: int,
    data: ChargeRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    payment = ledger.charge(
        order_id, data.payment_method.model_dump(), data.gateway_type, data.metadata,
        tenant_id=ctx.tenant_id, actor=ctx.actor,
    )
    return _payment_body(payment)


@router.get("/orders/{order_id}/payments", response_model=PaymentListResponse)
def list_order_payments(
    order_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    return {"success": True, "payments": ledger.list_payments(order_id, tenant_id=ctx.tenant_id)}


@router.post("/payments/{payment_id}/refund", response_model=RefundResponse)
def refund_payment(
    payment_id: int,
    data: RefundRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    payment, refund = ledger.refund(payment_id, data.amount, data.reason, tenant_id=ctx.tenant_id, actor=ctx.actor)
    return {"success": True, "payment": payment, "refund": refund}


@router.get("/payments/{payment_id}", response_model=PaymentDetailResponse)
def get_payment(
    payment_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    payment = ledger.get_payment(payment_id, tenant_id=ctx.tenant_id)
    return {"success": True, "payment": payment, "fees": payment, "refunds": payment.refunds}


@router.get("/refunds", response_model=RefundListResponse)
def list_refunds(
    status: Optional[str] = Query(default=None),
    payment_id: Optional[int] = Query(default=None, alias="paymentId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    refunds, total = ledger.list_refunds(ctx.tenant_id, status, payment_id, page, limit)
    return {"success": True, "refunds": refunds, "page": page, "limit": limit, "total": total}


@router.get("/refunds/{refund_id}", response_model=RefundDetailResponse)
def get_refund(
    refund_id: int,
    ctx: TenantContext = Depends(get_tenant_context),
    ledger: PaymentLedger = Depends(get_ledger),
):
    return {"success": True, "refund": ledger.get_refund(refund_id, tenant_id=ctx.tenant_id)}
