from __future__ import annotations

from seo_billing.services.billing_sync import ClientFactory, default_client_factory


def get_shopify_client_factory() -> ClientFactory:
    """Overridden in tests to hand back clients on an httpx.MockTransport."""
    return default_client_factory
