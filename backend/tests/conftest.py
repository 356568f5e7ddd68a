import os

# Point the app engine at SQLite before seo_billing.core.database is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SHOPIFY_API_KEY", "test_api_key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test_shopify_secret")

import json
import time
from contextlib import contextmanager
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from seo_billing.core.base import Base
from seo_billing.core import config as app_config
from seo_billing.core.security import compute_webhook_hmac

# Import models so they register with SQLAlchemy metadata.
from seo_billing.models.user import User  # noqa: F401
from seo_billing.models.subscription import Subscription  # noqa: F401
from seo_billing.models.credit import CreditGrant  # noqa: F401
from seo_billing.models.discount_code import DiscountCode, DiscountCodeRedemption  # noqa: F401
from seo_billing.models.rate_limit import RateLimit  # noqa: F401
from seo_billing.models.shopify_webhook_event import ShopifyWebhookEvent  # noqa: F401
from seo_billing.models.shopify_session import ShopifySession  # noqa: F401

from seo_billing.core.database import get_db
from seo_billing.dependencies.auth import get_current_shop
from seo_billing.dependencies.shopify import get_shopify_client_factory
from seo_billing.services.shopify_graphql import ShopifyAdminClient

SHOP_A = "shop-a.myshopify.com"
SHOP_B = "shop-b.myshopify.com"
ADMIN_TOKEN = "test-admin-token-0123456789abcdef0123"


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests with StaticPool; reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def session_factory(db_engine, db_session):
    """Independent sessions on the same database, for tests that simulate two requests."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests tweak the process-global settings object; restore it after each test.
    """
    keys = [
        "SHOPIFY_API_KEY",
        "SHOPIFY_API_SECRET",
        "ADMIN_API_TOKEN",
        "RATE_LIMIT_ENABLED",
        "DISCOUNT_CODE_MAX_LENGTH",
        "SUBSCRIPTION_PERIOD_DAYS",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    app_config.settings.SHOPIFY_API_KEY = "test_api_key"
    app_config.settings.SHOPIFY_API_SECRET = "test_shopify_secret"
    app_config.settings.ADMIN_API_TOKEN = ""
    # Default all tests to "rate limiting disabled" unless a test turns it on.
    app_config.settings.RATE_LIMIT_ENABLED = False
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


class FakeShopifyAdminAPI:
    """
    Backs ShopifyAdminClient with httpx.MockTransport.

    Set `subscriptions` to the activeSubscriptions list to return, or `failure`
    to "timeout", "connect" or an HTTP status code.
    """

    def __init__(self) -> None:
        self.subscriptions: list[dict[str, Any]] = []
        self.failure: str | int | None = None
        self.graphql_errors: list[dict[str, Any]] | None = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failure == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.failure == "connect":
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(self.failure, int):
            return httpx.Response(self.failure, json={"errors": "boom"})
        if self.graphql_errors:
            return httpx.Response(200, json={"errors": self.graphql_errors})
        return httpx.Response(
            200,
            json={"data": {"currentAppInstallation": {"activeSubscriptions": self.subscriptions}}},
        )

    def client_factory(self, db, shop: str) -> ShopifyAdminClient:
        return ShopifyAdminClient(shop, "shpat_test", transport=httpx.MockTransport(self.handler))


@pytest.fixture()
def shopify_api():
    return FakeShopifyAdminAPI()


@pytest.fixture()
def app(db_session, shopify_api):
    from seo_billing.main import app as fastapi_app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_shopify_client_factory] = lambda: shopify_api.client_factory
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    """
    Default client authenticated as SHOP_A.
    """
    app.dependency_overrides[get_current_shop] = lambda: SHOP_A
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_current_shop, None)


@pytest.fixture()
def client_for(app):
    """
    Context manager to create a client authenticated as an arbitrary shop.

    Usage:
        with client_for("other.myshopify.com") as c:
            ...
    """

    @contextmanager
    def _client_for(shop: str):
        app.dependency_overrides[get_current_shop] = lambda: shop
        with TestClient(app) as c:
            yield c
        app.dependency_overrides.pop(get_current_shop, None)

    return _client_for


@pytest.fixture()
def anonymous_client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def admin_client(app):
    app_config.settings.ADMIN_API_TOKEN = ADMIN_TOKEN
    with TestClient(app, headers={"X-Admin-Token": ADMIN_TOKEN}) as c:
        yield c


def make_session_token(shop: str = SHOP_A, *, secret: str | None = None, **overrides: Any) -> str:
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": f"https://{shop}/admin",
        "dest": f"https://{shop}",
        "aud": app_config.settings.SHOPIFY_API_KEY,
        "sub": "42",
        "exp": now + 60,
        "nbf": now - 5,
        "iat": now - 5,
        "jti": "test-jti",
        "sid": "test-sid",
    }
    claims.update(overrides)
    return jwt.encode(claims, secret or app_config.settings.SHOPIFY_API_SECRET, algorithm="HS256")


def signed_webhook_headers(
    body: bytes,
    *,
    topic: str,
    shop: str = SHOP_A,
    webhook_id: str = "wh-1",
    secret: str | None = None,
) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop,
        "X-Shopify-Webhook-Id": webhook_id,
        "X-Shopify-Hmac-Sha256": compute_webhook_hmac(body, secret or app_config.settings.SHOPIFY_API_SECRET),
    }


def json_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")
