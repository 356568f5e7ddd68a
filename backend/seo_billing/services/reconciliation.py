from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Sequence

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from seo_billing.core.config import settings
from seo_billing.core.time_utils import utc_now
from seo_billing.models.credit import CreditGrantSource
from seo_billing.models.user import User
from seo_billing.schemas.billing import ActiveSubscription, SubscriptionEvent
from seo_billing.services import users as users_service
from seo_billing.services.credits import CreditsService, subscription_grant_key
from seo_billing.services.errors import BillingError, BillingValidationError, PersistenceError
from seo_billing.services.plans import PLAN_CATALOG, PlanKey, canonical_plan_key
from seo_billing.services.subscriptions import (
    SubscriptionObservation,
    find_newer_active_subscription,
    get_subscription,
    upsert_subscription,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    updated: bool
    plan: str | None = None
    credits: int | None = None
    credits_granted: int = 0
    stale: bool = False


class ReconciliationService:
    """
    Keeps User.plan / User.credits in line with Shopify's billing state.

    Three entry points feed the same derivation:
    - reconcile_from_webhook: one app_subscriptions/update delivery
    - reconcile_from_snapshot: the activeSubscriptions poll, the fallback for missed webhooks
    - manual_override: admin tooling, bypasses subscriptions entirely

    Active subscriptions add the plan's credits once per (subscription, period end);
    the ledger row for that key is written in the same transaction as the balance
    update, under a row lock on the user. Anything that is not active demotes the
    plan to free and leaves the balance alone, unless a subscription recorded after
    it is still active (an upgrade whose old subscription was cancelled late).
    """

    def __init__(self, db: Session, *, clock: Callable[[], datetime] | None = None):
        self.db = db
        self.clock = clock or utc_now
        self.credits = CreditsService(db)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def reconcile_from_webhook(
        self,
        shop: str,
        event: SubscriptionEvent | Mapping[str, Any],
    ) -> ReconcileResult:
        parsed = self._parse(SubscriptionEvent, event)
        observation = SubscriptionObservation(
            subscription_id=parsed.subscription_id,
            plan_name=parsed.plan_name,
            status=parsed.status,
            period_start=parsed.period_start,
            period_end=parsed.period_end,
            trial_start=parsed.trial_start,
            trial_end=parsed.trial_end,
            is_test=parsed.is_test,
        )
        return self._apply(shop, observation, channel="webhook")

    def reconcile_from_snapshot(
        self,
        shop: str,
        subscriptions: Sequence[ActiveSubscription | Mapping[str, Any]],
    ) -> ReconcileResult:
        if not subscriptions:
            # No data is not proof of cancellation; only an explicit webhook demotes.
            user = users_service.get_or_create_user(self.db, shop)
            return ReconcileResult(updated=False, plan=user.plan, credits=user.credits)

        if len(subscriptions) > 1:
            logger.warning(
                "Shop %s reported %d active subscriptions; reconciling the first",
                shop,
                len(subscriptions),
            )

        entry = self._parse(ActiveSubscription, subscriptions[0])
        observation = SubscriptionObservation(
            subscription_id=entry.id,
            plan_name=entry.name,
            status=entry.status,
            period_start=None,
            period_end=entry.current_period_end,
            is_test=entry.test,
        )
        return self._apply(shop, observation, channel="snapshot")

    def manual_override(self, shop: str, plan_key: str | PlanKey) -> User:
        """Set plan and the catalog credit amount directly. Admin only."""
        try:
            key = PlanKey(str(getattr(plan_key, "value", plan_key) or "").strip().lower())
        except ValueError as exc:
            raise BillingValidationError(f"Unknown plan key: {plan_key}") from exc
        plan = PLAN_CATALOG[key]

        user = users_service.get_or_create_user(self.db, shop)
        try:
            users_service.lock_user(self.db, user.shop)
            self.credits.record_grant(
                user.id,
                amount=plan.credits,
                source=CreditGrantSource.ADMIN,
                idempotency_key=f"admin:{uuid.uuid4().hex}",
                source_ref=key.value,
                description=f"Manual override to {plan.display_name}",
            )
            updated = users_service.set_plan_and_credits(self.db, user.shop, key, plan.credits, commit=False)
            self.db.commit()
        except BillingError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Manual override failed for shop %s", user.shop)
            raise PersistenceError(f"Failed to override plan for {user.shop}") from exc

        logger.info("Manual override: shop=%s plan=%s credits=%s", updated.shop, updated.plan, updated.credits)
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _parse(self, model, value):
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except ValidationError as exc:
            raise BillingValidationError(f"Malformed subscription payload: {exc.error_count()} error(s)") from exc

    def _resolve_period(
        self,
        subscription_id: str,
        start: datetime | None,
        end: datetime | None,
    ) -> tuple[datetime, datetime, bool]:
        """Fill a missing period from the stored row, or estimate one. The flag marks an estimated end."""
        if start is not None and end is not None:
            return start, end, False

        period = timedelta(days=settings.SUBSCRIPTION_PERIOD_DAYS)
        existing = get_subscription(self.db, subscription_id)
        if existing is not None:
            estimated = bool(existing.period_estimated) if end is None else False
            start = start or existing.current_period_start
            end = end or existing.current_period_end
            return start, end, estimated

        if end is not None:
            return end - period, end, False
        start = start or self.clock()
        return start, start + period, True

    def _apply(self, shop: str, observation: SubscriptionObservation, *, channel: str) -> ReconcileResult:
        user = users_service.get_or_create_user(self.db, shop)
        normalized = user.shop
        try:
            user = users_service.lock_user(self.db, normalized)
            # Read the stored period only under the lock so concurrent deliveries agree on it.
            start, end, estimated = self._resolve_period(
                observation.subscription_id, observation.period_start, observation.period_end
            )
            observation = replace(observation, period_start=start, period_end=end, period_estimated=estimated)
            outcome = upsert_subscription(self.db, user, observation)
            if outcome.stale:
                plan, credits = user.plan, user.credits
                self.db.rollback()
                return ReconcileResult(updated=False, plan=plan, credits=credits, stale=True)

            result = self._apply_plan_state(user, observation, outcome.replaced_estimated_period_end)
            self.db.commit()
        except BillingError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception(
                "Reconciliation (%s) failed for shop %s subscription %s",
                channel,
                normalized,
                observation.subscription_id,
            )
            raise PersistenceError(f"Failed to reconcile subscription for {normalized}") from exc

        if result.updated:
            logger.info(
                "Reconciled shop %s via %s: plan=%s credits=%s granted=%s",
                normalized,
                channel,
                result.plan,
                result.credits,
                result.credits_granted,
            )
        return result

    def _apply_plan_state(
        self,
        user: User,
        observation: SubscriptionObservation,
        replaced_estimate: datetime | None = None,
    ) -> ReconcileResult:
        shop = user.shop
        if not observation.is_active:
            if user.plan == PlanKey.FREE.value:
                return ReconcileResult(updated=False, plan=user.plan, credits=user.credits)
            successor = find_newer_active_subscription(self.db, user.id, observation.subscription_id)
            if successor is not None:
                logger.info(
                    "Subscription %s is %s but was replaced by active %s; shop %s stays on %s",
                    observation.subscription_id,
                    observation.status,
                    successor.shopify_subscription_id,
                    shop,
                    user.plan,
                )
                return ReconcileResult(updated=False, plan=user.plan, credits=user.credits)
            demoted = users_service.set_plan(self.db, shop, PlanKey.FREE, commit=False)
            logger.info(
                "Subscription %s is %s; shop %s moved to free with %s credits kept",
                observation.subscription_id,
                observation.status,
                shop,
                demoted.credits,
            )
            return ReconcileResult(updated=True, plan=demoted.plan, credits=demoted.credits)

        target = canonical_plan_key(observation.plan_name)
        if target == PlanKey.FREE:
            logger.warning(
                "Active subscription %s has unrecognized plan name %r; treating as free",
                observation.subscription_id,
                observation.plan_name,
            )
            if user.plan == PlanKey.FREE.value:
                return ReconcileResult(updated=False, plan=user.plan, credits=user.credits)
            demoted = users_service.set_plan(self.db, shop, PlanKey.FREE, commit=False)
            return ReconcileResult(updated=True, plan=demoted.plan, credits=demoted.credits)

        plan = PLAN_CATALOG[target]
        plan_changed = user.plan != target.value
        amount = plan.credits
        description = f"{plan.display_name} ({observation.plan_name})"
        if replaced_estimate is not None:
            estimated_key = subscription_grant_key(observation.subscription_id, replaced_estimate)
            if self.credits.find_grant(user.id, estimated_key) is not None:
                # This period was already credited under its estimated end; mark the real key with a zero grant.
                amount = 0
                description = f"{description}; credited under {estimated_key}"

        grant = self.credits.record_grant(
            user.id,
            amount=amount,
            source=CreditGrantSource.SUBSCRIPTION,
            idempotency_key=subscription_grant_key(observation.subscription_id, observation.period_end),
            source_ref=observation.subscription_id,
            description=description,
        )
        granted = amount if grant.created else 0

        current = user
        if granted:
            current = users_service.add_credits(self.db, shop, granted, commit=False)
        if plan_changed:
            current = users_service.set_plan(self.db, shop, target, commit=False)

        return ReconcileResult(
            updated=bool(granted) or plan_changed,
            plan=current.plan,
            credits=current.credits,
            credits_granted=granted,
        )
