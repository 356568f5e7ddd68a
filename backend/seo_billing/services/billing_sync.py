from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from seo_billing.services.reconciliation import ReconcileResult, ReconciliationService
from seo_billing.services.shopify_graphql import ShopifyAdminClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Session, str], ShopifyAdminClient]


def default_client_factory(db: Session, shop: str) -> ShopifyAdminClient:
    return ShopifyAdminClient.for_shop(db, shop)


def sync_shop_billing(
    db: Session,
    shop: str,
    *,
    client_factory: ClientFactory = default_client_factory,
) -> ReconcileResult:
    """
    Poll Shopify for the shop's active subscriptions and reconcile.

    Upstream failures propagate before anything is written.
    """
    with client_factory(db, shop) as client:
        subscriptions = client.get_active_subscriptions()
    logger.debug("Shop %s has %d active subscription(s)", shop, len(subscriptions))
    return ReconciliationService(db).reconcile_from_snapshot(shop, subscriptions)
