# seo_billing/core/security.py
from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any
from urllib.parse import urlparse

from jose import JWTError, jwt

from seo_billing.core.config import settings

SESSION_TOKEN_ALGORITHM = "HS256"


class SessionTokenError(ValueError):
    """Raised when an App Bridge session token cannot be trusted."""


def _require_shopify_secret() -> str:
    secret = (settings.SHOPIFY_API_SECRET or "").strip()
    if not secret:
        raise RuntimeError("SHOPIFY_API_SECRET must be set")
    return secret


# -------------------------
# App Bridge session tokens
# -------------------------
def decode_session_token(token: str) -> dict[str, Any]:
    """
    Verify a Shopify App Bridge session token and return its claims.

    The token is an HS256 JWT signed with the app secret. Signature, exp and nbf
    are checked by jose; we additionally require the audience to be our API key
    and the issuer host to match the destination shop.
    """
    secret = _require_shopify_secret()
    options = {"leeway": settings.SESSION_TOKEN_LEEWAY_SECONDS}
    audience = settings.SHOPIFY_API_KEY or None
    if audience is None:
        options["verify_aud"] = False

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[SESSION_TOKEN_ALGORITHM],
            audience=audience,
            options=options,
        )
    except JWTError as exc:
        raise SessionTokenError(f"Invalid session token: {exc}") from exc

    issuer_host = urlparse(str(payload.get("iss") or "")).hostname
    dest_host = urlparse(str(payload.get("dest") or "")).hostname
    if not issuer_host or not dest_host:
        raise SessionTokenError("Session token missing iss/dest")
    if issuer_host != dest_host:
        raise SessionTokenError("Issuer and destination domains don't match")
    return payload


def shop_from_session_token(token: str) -> str:
    payload = decode_session_token(token)
    return urlparse(str(payload["dest"])).hostname or ""


# -------------------------
# Webhook signatures
# -------------------------
def compute_webhook_hmac(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_hmac(body: bytes, signature: str | None) -> bool:
    """Constant-time check of X-Shopify-Hmac-Sha256 against the raw request body."""
    if not signature:
        return False
    secret = (settings.SHOPIFY_API_SECRET or "").strip()
    if not secret:
        return False
    expected = compute_webhook_hmac(body, secret)
    return hmac.compare_digest(expected, signature.strip())


# -------------------------
# Admin tooling
# -------------------------
def verify_admin_token(candidate: str | None) -> bool:
    configured = (settings.ADMIN_API_TOKEN or "").strip()
    if not configured or not candidate:
        return False
    return hmac.compare_digest(configured, candidate.strip())
