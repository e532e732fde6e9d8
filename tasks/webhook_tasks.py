import logging

from core.celery import celery_app
from core.db import db_session

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=5, name="process_webhook_event")
def process_webhook_event_task(self, webhook_event_id: int):
    """
    Apply a stored webhook event through the payment ledger.
    Retries with exponential backoff; the event row keeps the last error.
    """
    from services.gateways import GatewayRegistry
    from services.webhooks import WebhookReconciler
    from core.config import settings

    try:
        with db_session() as db:
            reconciler = WebhookReconciler(db, GatewayRegistry.from_settings(settings))
            processed = reconciler.process(webhook_event_id)
        return {"webhook_event_id": webhook_event_id, "processed": processed}
    except Exception as exc:
        countdown = min(2 ** self.request.retries, 60)
        logger.warning("Webhook event %s failed, retrying in %ss: %s", webhook_event_id, countdown, exc)
        raise self.retry(exc=exc, countdown=countdown)


def enqueue_webhook_processing(webhook_event_id: int) -> None:
    process_webhook_event_task.delay(webhook_event_id)
