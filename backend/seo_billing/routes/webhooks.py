from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from seo_billing.core.database import get_db
from seo_billing.core.security import verify_webhook_hmac
from seo_billing.services.webhooks import (
    TOPIC_APP_UNINSTALLED,
    TOPIC_SUBSCRIPTION_UPDATE,
    ShopifyWebhookService,
    parse_raw_payload,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _receive(request: Request, db: Session, expected_topic: str) -> dict[str, bool]:
    body = await request.body()
    if not verify_webhook_hmac(body, request.headers.get("x-shopify-hmac-sha256")):
        logger.warning("Rejected Shopify webhook with invalid HMAC on %s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    shop = (request.headers.get("x-shopify-shop-domain") or "").strip()
    webhook_id = (request.headers.get("x-shopify-webhook-id") or "").strip()
    if not shop or not webhook_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Shopify-Shop-Domain or X-Shopify-Webhook-Id header",
        )

    topic = (request.headers.get("x-shopify-topic") or expected_topic).strip().lower()
    if topic != expected_topic:
        logger.warning("Webhook %s delivered topic %s to the %s endpoint", webhook_id, topic, expected_topic)
        topic = expected_topic

    payload = parse_raw_payload(body)
    handled = ShopifyWebhookService(db).process(
        webhook_id=webhook_id,
        topic=topic,
        shop=shop,
        payload=payload,
    )
    return {"received": True, "handled": handled}


@router.post("/app-subscriptions/update", status_code=status.HTTP_200_OK)
async def app_subscriptions_update(
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, bool]:
    return await _receive(request, db, TOPIC_SUBSCRIPTION_UPDATE)


@router.post("/app/uninstalled", status_code=status.HTTP_200_OK)
async def app_uninstalled(
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, bool]:
    return await _receive(request, db, TOPIC_APP_UNINSTALLED)
