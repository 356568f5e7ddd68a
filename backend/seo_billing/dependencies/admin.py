from __future__ import annotations

from fastapi import Header, HTTPException, status

from seo_billing.core.config import settings
from seo_billing.core.security import verify_admin_token


def require_admin(x_admin_token: str | None = Header(None)) -> None:
    """
    Gate for plan overrides and discount code management.

    With no ADMIN_API_TOKEN configured the admin surface does not exist (404).
    """
    if not (settings.ADMIN_API_TOKEN or "").strip():
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Not found")
    if not x_admin_token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Missing admin token")
    if not verify_admin_token(x_admin_token):
        raise HTTPException(status.HTTP_403_FORBIDDEN, detail="Admin access required")
