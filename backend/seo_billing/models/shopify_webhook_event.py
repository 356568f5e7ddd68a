from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, func

from seo_billing.core.base import Base


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ShopifyWebhookEvent(Base):
    __tablename__ = "shopify_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    # X-Shopify-Webhook-Id; identical across redeliveries of the same event.
    webhook_id = Column(String(255), unique=True, nullable=False, index=True)
    topic = Column(String(100), nullable=False)
    shop = Column(String(255), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    status = Column(String(20), nullable=False, server_default=WebhookEventStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
