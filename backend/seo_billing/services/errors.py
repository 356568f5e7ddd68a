from __future__ import annotations


class BillingError(Exception):
    """Base error for plan, credit and redemption operations."""


class BillingValidationError(BillingError):
    """Bad caller input (empty shop, unknown plan key, malformed event). Not retried."""


class NotFoundError(BillingError):
    """A referenced shop, subscription or discount code does not exist."""


class ConflictError(BillingError):
    """An expected business conflict, e.g. a discount code already redeemed by this shop."""


class UpstreamError(BillingError):
    """The remote billing API failed or timed out. Must never be read as "no subscription"."""


class PersistenceError(BillingError):
    """A storage write failed. Webhook handlers surface this so Shopify retries delivery."""
