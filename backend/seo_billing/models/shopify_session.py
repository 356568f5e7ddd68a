from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, String

from seo_billing.core.base import Base


class ShopifySession(Base):
    """
    Shopify OAuth session written by the install flow. We only read the offline
    access token to call the Admin API and delete rows on uninstall.
    """

    __tablename__ = "shopify_sessions"

    id = Column(String(255), primary_key=True)
    shop = Column(String(255), nullable=False, index=True)
    state = Column(String(255), nullable=False, server_default="")
    is_online = Column(Boolean, nullable=False, server_default="false", default=False)
    scope = Column(String(1024), nullable=True)
    expires = Column(DateTime(timezone=True), nullable=True)
    access_token = Column(String(255), nullable=False)
