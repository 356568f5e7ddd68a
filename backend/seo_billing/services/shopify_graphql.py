"""
Shopify Admin GraphQL client.

Only the billing query the reconciliation poll needs lives here. Every failure
(timeout, transport error, HTTP error, GraphQL `errors`) raises ShopifyAPIError;
callers must never read a failure as "no active subscription".
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from sqlalchemy import or_
from sqlalchemy.orm import Session

from seo_billing.core.config import settings
from seo_billing.models.shopify_session import ShopifySession
from seo_billing.schemas.billing import ActiveSubscription
from seo_billing.services.errors import NotFoundError, UpstreamError
from seo_billing.services.users import normalize_shop

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTIONS_QUERY = """
query ActiveSubscriptions {
  currentAppInstallation {
    activeSubscriptions {
      id
      name
      status
      currentPeriodEnd
      test
    }
  }
}
"""

CONNECT_TIMEOUT_SECONDS = 10.0


class ShopifyAPIError(UpstreamError):
    """Error communicating with the Shopify Admin API."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class ShopifyAdminClient:
    """
    Synchronous GraphQL client for one shop.

    `transport` is there for tests (httpx.MockTransport).
    """

    def __init__(
        self,
        shop: str,
        access_token: str,
        *,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        if not access_token:
            raise ValueError("access_token is required")
        self.shop = normalize_shop(shop)
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.graphql_url = f"https://{self.shop}/admin/api/{self.api_version}/graphql.json"
        read_timeout = timeout if timeout is not None else settings.SHOPIFY_GRAPHQL_TIMEOUT_SECONDS
        self._client = httpx.Client(
            timeout=httpx.Timeout(read_timeout, connect=min(CONNECT_TIMEOUT_SECONDS, read_timeout)),
            headers={
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": access_token,
            },
            transport=transport,
        )

    @classmethod
    def for_shop(cls, db: Session, shop: str, **kwargs: Any) -> "ShopifyAdminClient":
        """Build a client from the shop's stored offline session."""
        normalized = normalize_shop(shop)
        now = datetime.now(timezone.utc)
        session = (
            db.query(ShopifySession)
            .filter(
                ShopifySession.shop == normalized,
                ShopifySession.is_online.is_(False),
                or_(ShopifySession.expires.is_(None), ShopifySession.expires > now),
            )
            .order_by(ShopifySession.id)
            .first()
        )
        if session is None or not session.access_token:
            raise NotFoundError(f"No offline Shopify session for {normalized}")
        return cls(normalized, session.access_token, **kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ShopifyAdminClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = self._client.post(self.graphql_url, json=payload)
        except httpx.TimeoutException as exc:
            logger.error("Shopify API timeout for %s: %s", self.shop, exc)
            raise ShopifyAPIError(f"Request timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.error("Shopify API request error for %s: %s", self.shop, exc)
            raise ShopifyAPIError(f"Request error: {exc}") from exc

        if response.status_code == 401:
            raise ShopifyAPIError("Invalid or expired access token", status_code=401)
        if response.status_code == 402:
            raise ShopifyAPIError("Shop is frozen or payment required", status_code=402)
        if response.status_code == 429:
            raise ShopifyAPIError("Shopify rate limit exceeded", status_code=429)
        if response.status_code >= 400:
            raise ShopifyAPIError(
                f"Shopify API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise ShopifyAPIError("Shopify returned a non-JSON response", status_code=response.status_code) from exc

        if result.get("errors"):
            logger.error("GraphQL errors for %s: %s", self.shop, result["errors"])
            raise ShopifyAPIError(f"GraphQL errors: {result['errors']}", response=result)
        return result.get("data") or {}

    def get_active_subscriptions(self) -> list[ActiveSubscription]:
        data = self.execute(ACTIVE_SUBSCRIPTIONS_QUERY)
        installation = data.get("currentAppInstallation")
        if installation is None:
            raise ShopifyAPIError("Response missing currentAppInstallation", response=data)

        raw = installation.get("activeSubscriptions") or []
        try:
            return [ActiveSubscription.model_validate(item) for item in raw]
        except ValidationError as exc:
            raise ShopifyAPIError("Malformed activeSubscriptions payload", response=data) from exc
