from __future__ import annotations

import json
import logging
from typing import Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from seo_billing.core.database import get_db
from seo_billing.dependencies.auth import get_current_shop
from seo_billing.services.rate_limiter import RateLimitResult, get_rate_limiter

logger = logging.getLogger(__name__)


def require_rate_limit(
    route_key: str,
    *,
    limit: int,
    window_seconds: int,
) -> Callable:
    resolved_limit = max(1, int(limit))
    resolved_window = max(1, int(window_seconds))

    def dependency(
        request: Request,
        shop: str = Depends(get_current_shop),
        db: Session = Depends(get_db),
    ) -> None:
        limiter = get_rate_limiter(db)
        result = limiter.check(
            identifier=shop,
            route_key=route_key,
            limit=resolved_limit,
            window_seconds=resolved_window,
        )
        _log_decision(request=request, shop=shop, result=result, route_key=route_key)
        if not result.allowed:
            retry_after = max(1, result.retry_after_seconds)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "RATE_LIMITED",
                    "message": "Too many attempts. Please try again later.",
                    "details": {
                        "retry_after_seconds": retry_after,
                        "limit": result.limit,
                        "remaining": result.remaining,
                    },
                },
                headers={"Retry-After": str(retry_after)},
            )

    return dependency


def _log_decision(*, request: Request, shop: str, result: RateLimitResult, route_key: str) -> None:
    payload = {
        "shop": shop,
        "route": request.url.path,
        "http_method": request.method,
        "route_key": route_key,
        "limiter_key": result.limiter_key,
        "window_seconds": result.window_seconds,
        "limit": result.limit,
        "current_count": result.count,
        "remaining": result.remaining,
        "reset_epoch": result.window_reset_epoch,
        "decision": "allow" if result.allowed else "block",
    }
    logger.info(json.dumps(payload, separators=(",", ":")))
