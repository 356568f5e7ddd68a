from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from seo_billing.core.time_utils import utc_now
from seo_billing.models.shopify_session import ShopifySession
from seo_billing.models.shopify_webhook_event import ShopifyWebhookEvent, WebhookEventStatus
from seo_billing.services.errors import BillingValidationError
from seo_billing.services.reconciliation import ReconciliationService
from seo_billing.services.users import normalize_shop

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500

TOPIC_SUBSCRIPTION_UPDATE = "app_subscriptions/update"
TOPIC_APP_UNINSTALLED = "app/uninstalled"


class ShopifyWebhookService:
    """
    Record and dispatch verified Shopify webhooks.

    Responsibilities:
    - Persist each delivery keyed by X-Shopify-Webhook-Id for auditing and dedupe
    - Skip redeliveries of events that already processed; retry ones that failed
    - Route app_subscriptions/update into reconciliation and app/uninstalled into session cleanup

    Failures are recorded on the event row and re-raised so the route answers
    with a 5xx and Shopify redelivers.
    """

    def __init__(self, db: Session, reconciliation: ReconciliationService | None = None):
        self.db = db
        self.reconciliation = reconciliation or ReconciliationService(db)

    def process(self, *, webhook_id: str, topic: str, shop: str, payload: dict[str, Any]) -> bool:
        """Return True if the event was handled now, False if skipped as a duplicate or unsupported."""
        webhook_id = (webhook_id or "").strip()
        topic = (topic or "").strip().lower()
        if not webhook_id or not topic:
            raise BillingValidationError("Webhook missing id/topic")
        normalized_shop = normalize_shop(shop)

        if not self._claim(webhook_id, topic, normalized_shop, payload):
            logger.info("Shopify webhook %s (%s) already processed; skipping", webhook_id, topic)
            return False

        try:
            handled = self._dispatch(topic, normalized_shop, payload)
        except Exception as exc:
            logger.exception("Shopify webhook %s (%s) failed for %s", webhook_id, topic, normalized_shop)
            self._mark(webhook_id, WebhookEventStatus.FAILED, error=str(exc))
            raise

        self._mark(webhook_id, WebhookEventStatus.PROCESSED if handled else WebhookEventStatus.SKIPPED)
        return handled

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _dispatch(self, topic: str, shop: str, payload: dict[str, Any]) -> bool:
        if topic == TOPIC_SUBSCRIPTION_UPDATE:
            return self._handle_subscription_update(shop, payload)
        if topic == TOPIC_APP_UNINSTALLED:
            return self._handle_uninstalled(shop)
        logger.info("Ignoring unsupported Shopify webhook topic: %s", topic)
        return False

    def _handle_subscription_update(self, shop: str, payload: dict[str, Any]) -> bool:
        subscription = payload.get("app_subscription")
        if not isinstance(subscription, dict):
            raise BillingValidationError("Webhook payload missing app_subscription")
        result = self.reconciliation.reconcile_from_webhook(shop, subscription)
        if result.stale:
            logger.info("Webhook for %s carried a stale subscription period; nothing applied", shop)
        return True

    def _handle_uninstalled(self, shop: str) -> bool:
        deleted = (
            self.db.query(ShopifySession)
            .filter(ShopifySession.shop == shop)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info("App uninstalled from %s; removed %s stored session(s)", shop, deleted)
        return True

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------
    def _claim(self, webhook_id: str, topic: str, shop: str, payload: dict[str, Any]) -> bool:
        record = ShopifyWebhookEvent(
            webhook_id=webhook_id,
            topic=topic,
            shop=shop,
            payload=payload,
            status=WebhookEventStatus.PENDING.value,
        )
        try:
            self.db.add(record)
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()

        existing = self._find(webhook_id)
        if existing is None:
            raise RuntimeError(f"Webhook event {webhook_id} conflicted but could not be loaded")
        if existing.status == WebhookEventStatus.FAILED.value:
            logger.info("Retrying previously failed Shopify webhook %s", webhook_id)
            existing.status = WebhookEventStatus.PENDING.value
            existing.error_message = None
            self.db.commit()
            return True
        return False

    def _mark(self, webhook_id: str, status: WebhookEventStatus, error: str | None = None) -> None:
        self.db.rollback()
        record = self._find(webhook_id)
        if record is None:
            return
        record.status = status.value
        record.error_message = error[:MAX_ERROR_MESSAGE_LENGTH] if error else None
        record.processed_at = utc_now()
        self.db.commit()

    def _find(self, webhook_id: str) -> ShopifyWebhookEvent | None:
        return (
            self.db.query(ShopifyWebhookEvent)
            .filter(ShopifyWebhookEvent.webhook_id == webhook_id)
            .first()
        )


def parse_raw_payload(payload: bytes) -> dict[str, Any]:
    """Deserialize the raw webhook body. Anything other than a JSON object is rejected."""
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise BillingValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(data, dict):
        raise BillingValidationError("Webhook body must be a JSON object")
    return data
