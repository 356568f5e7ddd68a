from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from seo_billing.core.config import settings
from seo_billing.core.time_utils import as_utc
from seo_billing.models.rate_limit import RateLimit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    limit: int
    remaining: int
    count: int
    window_reset_epoch: int
    limiter_key: str
    window_seconds: int


class RateLimiter(Protocol):
    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        ...


class NoopRateLimiter:
    """
    Disabled limiter that always allows requests. Used when rate limiting is turned off.
    """

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        return RateLimitResult(
            allowed=True,
            retry_after_seconds=0,
            limit=limit,
            remaining=max(0, limit),
            count=0,
            window_reset_epoch=now_ts + window_seconds,
            limiter_key=f"noop:{route_key}:window:{window_seconds}",
            window_seconds=window_seconds,
        )


class SqlRateLimiter:
    """
    Fixed-window counter per (identifier, action) stored in `rate_limits`.

    The window opens on the first attempt and closes `window_seconds` later; the
    next attempt after that starts a fresh window. Counting is done with
    conditional UPDATEs so two requests racing on the same row can't both read
    the old count. Each check commits on its own.
    """

    def __init__(self, db: Session):
        self.db = db

    def check(
        self,
        *,
        identifier: str,
        route_key: str,
        limit: int,
        window_seconds: int,
        now: int | None = None,
    ) -> RateLimitResult:
        now_ts = int(now or time.time())
        limiter_key = f"route:{route_key}:window:{window_seconds}"

        if limit <= 0 or window_seconds <= 0:
            return RateLimitResult(
                allowed=True,
                retry_after_seconds=0,
                limit=limit,
                remaining=0,
                count=0,
                window_reset_epoch=now_ts + max(window_seconds, 0),
                limiter_key=limiter_key,
                window_seconds=window_seconds,
            )

        now_dt = datetime.fromtimestamp(now_ts, tz=timezone.utc)
        row = self._increment(identifier, route_key, now_dt, window_seconds)
        self.db.commit()

        count = int(row.count)
        window_reset_epoch = int(as_utc(row.window_start).timestamp()) + window_seconds
        allowed = count <= limit
        retry_after = 0 if allowed else max(1, window_reset_epoch - now_ts)
        return RateLimitResult(
            allowed=allowed,
            retry_after_seconds=retry_after,
            limit=limit,
            remaining=max(0, limit - count),
            count=count,
            window_reset_epoch=window_reset_epoch,
            limiter_key=limiter_key,
            window_seconds=window_seconds,
        )

    def reset(self, identifier: str, route_key: str) -> None:
        self.db.query(RateLimit).filter(
            RateLimit.shop == identifier,
            RateLimit.action == route_key,
        ).delete(synchronize_session=False)
        self.db.commit()

    def _increment(self, identifier: str, action: str, now: datetime, window_seconds: int) -> RateLimit:
        window_floor = now - timedelta(seconds=window_seconds)
        for _ in range(2):
            bumped = self.db.execute(
                update(RateLimit)
                .where(
                    RateLimit.shop == identifier,
                    RateLimit.action == action,
                    RateLimit.window_start > window_floor,
                )
                .values(count=RateLimit.count + 1)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount == 0:
                restarted = self.db.execute(
                    update(RateLimit)
                    .where(
                        RateLimit.shop == identifier,
                        RateLimit.action == action,
                        RateLimit.window_start <= window_floor,
                    )
                    .values(count=1, window_start=now)
                    .execution_options(synchronize_session=False)
                )
                if restarted.rowcount == 0:
                    self.db.add(RateLimit(shop=identifier, action=action, count=1, window_start=now))
                    try:
                        self.db.flush()
                    except IntegrityError:
                        # Another request created the row first; count against it.
                        self.db.rollback()
                        continue

            return (
                self.db.execute(
                    select(RateLimit)
                    .where(RateLimit.shop == identifier, RateLimit.action == action)
                    .execution_options(populate_existing=True)
                )
                .scalars()
                .one()
            )
        raise RuntimeError(f"Could not record rate limit attempt for {identifier}:{action}")


def get_rate_limiter(db: Session) -> RateLimiter:
    if not settings.RATE_LIMIT_ENABLED:
        return NoopRateLimiter()
    return SqlRateLimiter(db)
