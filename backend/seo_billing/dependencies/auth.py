# seo_billing/dependencies/auth.py
from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from seo_billing.core.security import SessionTokenError, shop_from_session_token
from seo_billing.services.errors import BillingValidationError
from seo_billing.services.users import normalize_shop

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_shop(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    Validates the App Bridge session token:
      - Authorization: Bearer <token>
      - signature, exp/nbf, audience
      - iss host == dest host
    Returns:
      - the normalized shop domain from `dest`
    """
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing Authorization header")

    try:
        shop = normalize_shop(shop_from_session_token(creds.credentials))
    except (SessionTokenError, BillingValidationError):
        raise _unauthorized("Invalid or expired session token")

    request.state.shop = shop
    return shop
