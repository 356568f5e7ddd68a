# seo_billing/services/subscriptions.py
"""
Local mirror of Shopify AppSubscriptions.

Rows are keyed by the remote GID. Observations arrive out of order (webhook
retries, polls racing webhooks), so an observation whose period ends before
the stored one is treated as stale and dropped. A period we had to estimate
(the delivery carried none) never blocks a real one."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from seo_billing.core.time_utils import as_utc, utc_now
from seo_billing.models.subscription import Subscription, SubscriptionStatus
from seo_billing.models.user import User
from seo_billing.services.errors import ConflictError

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionObservation:
    """One observed state of a remote subscription, normalized from a webhook or a poll."""

    subscription_id: str
    plan_name: str
    status: str
    # None until reconciliation fills the period in from the stored row or an estimate.
    period_start: datetime | None
    period_end: datetime | None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    is_test: bool = False
    period_estimated: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value


@dataclass
class UpsertOutcome:
    subscription: Subscription
    created: bool = False
    stale: bool = False
    # Estimated period end this observation replaced with a real one, if any.
    replaced_estimated_period_end: datetime | None = None


def get_subscription(db: Session, shopify_subscription_id: str) -> Optional[Subscription]:
    return (
        db.query(Subscription)
        .filter(Subscription.shopify_subscription_id == shopify_subscription_id)
        .first()
    )


def find_newer_active_subscription(
    db: Session, user_id: int, shopify_subscription_id: str
) -> Optional[Subscription]:
    """Another of the user's subscriptions, recorded after this one, that is still active."""
    current = get_subscription(db, shopify_subscription_id)
    query = db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        Subscription.shopify_subscription_id != shopify_subscription_id,
    )
    if current is not None:
        query = query.filter(Subscription.id > current.id)
    return query.order_by(Subscription.id.desc()).first()


def is_stale(existing: Subscription, observation: SubscriptionObservation) -> bool:
    if existing.period_estimated and not observation.period_estimated:
        return False
    return as_utc(observation.period_end) < as_utc(existing.current_period_end)


def upsert_subscription(db: Session, user: User, observation: SubscriptionObservation) -> UpsertOutcome:
    """
    Create or update the local row for `observation`. Flushes only.

    Trial dates are only overwritten when the observation carries them; polls
    don't report trials.
    """
    existing = get_subscription(db, observation.subscription_id)

    if existing is None:
        row = Subscription(
            shopify_subscription_id=observation.subscription_id,
            user_id=user.id,
            plan_name=observation.plan_name,
            status=observation.status,
            current_period_start=observation.period_start,
            current_period_end=observation.period_end,
            trial_start=observation.trial_start,
            trial_end=observation.trial_end,
            is_test=observation.is_test,
            period_estimated=observation.period_estimated,
            cancelled_at=utc_now() if observation.status == SubscriptionStatus.CANCELLED.value else None,
        )
        db.add(row)
        db.flush()
        logger.info(
            "Recorded subscription %s for shop %s (plan=%r status=%s)",
            observation.subscription_id,
            user.shop,
            observation.plan_name,
            observation.status,
        )
        return UpsertOutcome(subscription=row, created=True)

    if existing.user_id != user.id:
        raise ConflictError(
            f"Subscription {observation.subscription_id} belongs to another shop"
        )

    if is_stale(existing, observation):
        logger.info(
            "Ignoring stale observation of subscription %s: period_end %s is before stored %s",
            observation.subscription_id,
            observation.period_end.isoformat(),
            as_utc(existing.current_period_end).isoformat(),
        )
        return UpsertOutcome(subscription=existing, stale=True)

    replaced_estimate = None
    if existing.period_estimated and not observation.period_estimated:
        if as_utc(existing.current_period_end) != as_utc(observation.period_end):
            replaced_estimate = existing.current_period_end

    existing.plan_name = observation.plan_name or existing.plan_name
    existing.status = observation.status
    existing.current_period_start = observation.period_start
    existing.current_period_end = observation.period_end
    if observation.trial_start is not None:
        existing.trial_start = observation.trial_start
    if observation.trial_end is not None:
        existing.trial_end = observation.trial_end
    existing.is_test = observation.is_test
    existing.period_estimated = observation.period_estimated
    if observation.status == SubscriptionStatus.CANCELLED.value and existing.cancelled_at is None:
        existing.cancelled_at = utc_now()
    db.flush()
    return UpsertOutcome(subscription=existing, replaced_estimated_period_end=replaced_estimate)
