from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from core.config import settings
from core.db import get_db
from schemas.payment import WebhookAck
from services.gateways import GatewayRegistry, get_gateway_registry
from services.webhooks import WebhookReconciler
from tasks.webhook_tasks import enqueue_webhook_processing

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{gateway}", response_model=WebhookAck)
async def receive_webhook(
    gateway: str,
    request: Request,
    db: Session = Depends(get_db),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
):
    """Authenticated deliveries are always acknowledged; processing errors stay on the stored event."""
    # Signatures cover the exact bytes sent, so read the body before any parsing
    body = await request.body()
    enqueue = enqueue_webhook_processing if settings.WEBHOOK_PROCESS_ASYNC else None
    reconciler = WebhookReconciler(db, gateways, enqueue=enqueue)
    receipt = await run_in_threadpool(reconciler.ingest, gateway, body, dict(request.headers))
    return {
        "success": True,
        "received": True,
        "event_id": receipt.event_id,
        "duplicate": receipt.duplicate,
        "processed": receipt.processed,
        "queued": receipt.queued,
    }
