from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from seo_billing.models.credit import CreditGrant
from seo_billing.models.subscription import Subscription
from seo_billing.services import users as users_service
from seo_billing.services.errors import BillingValidationError, PersistenceError
from seo_billing.services.reconciliation import ReconciliationService

SHOP = "shop-a.myshopify.com"
SUB_GID = "gid://shopify/AppSubscription/1001"
PERIOD_START = datetime(2026, 10, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 10, 31, tzinfo=timezone.utc)
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _webhook_event(**overrides) -> dict:
    event = {
        "admin_graphql_api_id": SUB_GID,
        "name": "Starter Plan",
        "status": "ACTIVE",
        "current_period_start": PERIOD_START.isoformat(),
        "current_period_end": PERIOD_END.isoformat(),
        "test": True,
    }
    event.update(overrides)
    return event


def _snapshot_entry(**overrides) -> dict:
    entry = {
        "id": SUB_GID,
        "name": "Starter Plan",
        "status": "ACTIVE",
        "currentPeriodEnd": PERIOD_END.isoformat(),
        "test": False,
    }
    entry.update(overrides)
    return entry


@pytest.fixture()
def service(db_session):
    return ReconciliationService(db_session, clock=lambda: NOW)


def _user(db_session):
    user = users_service.get_user_by_shop(db_session, SHOP)
    db_session.refresh(user)
    return user


# ----------------------------------------------------------------------
# Webhook path
# ----------------------------------------------------------------------
def test_active_webhook_adds_plan_credits_and_sets_plan(db_session, service):
    result = service.reconcile_from_webhook(SHOP, _webhook_event())

    assert result.updated is True
    assert result.plan == "starter"
    assert result.credits == 10 + 100
    assert result.credits_granted == 100

    sub = db_session.query(Subscription).one()
    assert sub.shopify_subscription_id == SUB_GID
    assert sub.status == "active"
    assert sub.plan_name == "Starter Plan"
    assert sub.is_test is True


def test_redelivered_webhook_does_not_double_credit(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    again = service.reconcile_from_webhook(SHOP, _webhook_event())

    assert again.updated is False
    assert again.credits_granted == 0
    assert _user(db_session).credits == 110
    assert db_session.query(CreditGrant).count() == 1


def test_numeric_id_and_gid_are_the_same_subscription(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    numeric = _webhook_event()
    numeric.pop("admin_graphql_api_id")
    numeric["id"] = 1001

    result = service.reconcile_from_webhook(SHOP, numeric)

    assert result.updated is False
    assert db_session.query(Subscription).count() == 1
    assert _user(db_session).credits == 110


def test_next_period_credits_again(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    renewal = _webhook_event(
        current_period_start=PERIOD_END.isoformat(),
        current_period_end=(PERIOD_END + timedelta(days=30)).isoformat(),
    )

    result = service.reconcile_from_webhook(SHOP, renewal)

    assert result.updated is True
    assert result.credits == 10 + 100 + 100


def test_upgrade_stacks_credits(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    upgrade = _webhook_event(admin_graphql_api_id="gid://shopify/AppSubscription/2002", name="Pro Plan")

    result = service.reconcile_from_webhook(SHOP, upgrade)

    assert result.plan == "pro"
    assert result.credits == 10 + 100 + 500


def test_late_cancellation_of_replaced_subscription_keeps_new_plan(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    upgrade = _webhook_event(admin_graphql_api_id="gid://shopify/AppSubscription/2002", name="Pro Plan")
    service.reconcile_from_webhook(SHOP, upgrade)

    result = service.reconcile_from_webhook(SHOP, _webhook_event(status="CANCELLED"))

    assert result.updated is False
    assert (result.plan, result.credits) == ("pro", 610)
    user = _user(db_session)
    assert (user.plan, user.credits) == ("pro", 610)
    old = db_session.query(Subscription).filter(Subscription.shopify_subscription_id == SUB_GID).one()
    assert old.status == "cancelled"


def test_cancellation_before_upgrade_activation_ends_on_new_plan(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    service.reconcile_from_webhook(SHOP, _webhook_event(status="CANCELLED"))
    upgrade = _webhook_event(admin_graphql_api_id="gid://shopify/AppSubscription/2002", name="Pro Plan")

    result = service.reconcile_from_webhook(SHOP, upgrade)

    assert (result.plan, result.credits) == ("pro", 610)


def test_cancelling_the_newest_subscription_demotes(db_session, service):
    # The older subscription's cancellation was never delivered; it must not keep the shop paid.
    service.reconcile_from_webhook(SHOP, _webhook_event())
    upgrade = _webhook_event(admin_graphql_api_id="gid://shopify/AppSubscription/2002", name="Pro Plan")
    service.reconcile_from_webhook(SHOP, upgrade)

    cancel = dict(upgrade, status="CANCELLED")
    result = service.reconcile_from_webhook(SHOP, cancel)

    assert result.updated is True
    assert (result.plan, result.credits) == ("free", 610)


@pytest.mark.parametrize("status", ["CANCELLED", "expired", "declined", "frozen", "pending"])
def test_non_active_status_demotes_without_touching_credits(db_session, service, status):
    service.reconcile_from_webhook(SHOP, _webhook_event())

    result = service.reconcile_from_webhook(SHOP, _webhook_event(status=status))

    assert result.updated is True
    assert result.plan == "free"
    assert result.credits == 110
    assert result.credits_granted == 0


def test_cancelled_at_set_once(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    service.reconcile_from_webhook(SHOP, _webhook_event(status="cancelled"))
    first_cancelled_at = db_session.query(Subscription).one().cancelled_at
    assert first_cancelled_at is not None

    service.reconcile_from_webhook(SHOP, _webhook_event(status="cancelled"))
    db_session.expire_all()
    assert db_session.query(Subscription).one().cancelled_at == first_cancelled_at


def test_stale_webhook_is_ignored(db_session, service):
    renewal_end = PERIOD_END + timedelta(days=30)
    service.reconcile_from_webhook(
        SHOP,
        _webhook_event(current_period_start=PERIOD_END.isoformat(), current_period_end=renewal_end.isoformat()),
    )

    # A cancellation for the previous period arrives late.
    result = service.reconcile_from_webhook(SHOP, _webhook_event(status="cancelled"))

    assert result.stale is True
    assert result.updated is False
    user = _user(db_session)
    assert user.plan == "starter"
    assert db_session.query(Subscription).one().status == "active"


def test_missing_period_is_synthesized(db_session, service):
    event = _webhook_event()
    event.pop("current_period_start")
    event.pop("current_period_end")

    result = service.reconcile_from_webhook(SHOP, event)

    assert result.updated is True
    sub = db_session.query(Subscription).one()
    assert sub.period_estimated is True
    start = sub.current_period_start.replace(tzinfo=timezone.utc)
    end = sub.current_period_end.replace(tzinfo=timezone.utc)
    assert start == NOW
    assert end == NOW + timedelta(days=30)


def test_missing_period_reuses_stored_period(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())
    event = _webhook_event(name="Starter Plan")
    event.pop("current_period_start")
    event.pop("current_period_end")

    result = service.reconcile_from_webhook(SHOP, event)

    assert result.updated is False
    sub = db_session.query(Subscription).one()
    assert sub.current_period_end.replace(tzinfo=timezone.utc) == PERIOD_END
    assert _user(db_session).credits == 110


def test_missing_period_is_resolved_after_the_user_lock(db_session, monkeypatch):
    # A second delivery of the same period-less event commits while this one waits on the lock.
    clock_values = iter([NOW + timedelta(hours=1), NOW])
    service = ReconciliationService(db_session, clock=lambda: next(clock_values))
    event = _webhook_event()
    event.pop("current_period_start")
    event.pop("current_period_end")
    real_lock_user = users_service.lock_user
    waiting = []

    def _lock_after_other_delivery(db, shop):
        if not waiting:
            waiting.append(shop)
            service.reconcile_from_webhook(SHOP, dict(event))
        return real_lock_user(db, shop)

    monkeypatch.setattr(users_service, "lock_user", _lock_after_other_delivery)

    service.reconcile_from_webhook(SHOP, event)

    assert _user(db_session).credits == 110
    assert db_session.query(CreditGrant).count() == 1
    sub = db_session.query(Subscription).one()
    assert sub.current_period_end.replace(tzinfo=timezone.utc) == NOW + timedelta(hours=1, days=30)


def test_poll_after_estimated_webhook_does_not_double_credit(db_session, service):
    event = _webhook_event()
    event.pop("current_period_start")
    event.pop("current_period_end")
    service.reconcile_from_webhook(SHOP, event)

    # The real period ends before the estimate; it must not be treated as stale or credited again.
    result = service.reconcile_from_snapshot(SHOP, [_snapshot_entry(currentPeriodEnd=PERIOD_END.isoformat())])

    assert result.stale is False
    assert result.updated is False
    assert _user(db_session).credits == 110
    sub = db_session.query(Subscription).one()
    assert sub.period_estimated is False
    assert sub.current_period_end.replace(tzinfo=timezone.utc) == PERIOD_END

    again = service.reconcile_from_snapshot(SHOP, [_snapshot_entry(currentPeriodEnd=PERIOD_END.isoformat())])
    assert again.updated is False
    assert _user(db_session).credits == 110


def test_unknown_plan_name_on_active_subscription_is_free(db_session, service):
    result = service.reconcile_from_webhook(SHOP, _webhook_event(name="Mystery Tier"))

    assert result.updated is False
    assert result.plan == "free"
    assert result.credits == 10
    assert db_session.query(CreditGrant).count() == 0


def test_malformed_event_is_a_validation_error(service):
    with pytest.raises(BillingValidationError):
        service.reconcile_from_webhook(SHOP, {"name": "Starter Plan", "status": "ACTIVE"})


def test_persistence_failure_raises_and_rolls_back(db_session, service, monkeypatch):
    users_service.get_or_create_user(db_session, SHOP)

    def _boom(*args, **kwargs):
        raise OperationalError("UPDATE users", {}, Exception("database is locked"))

    monkeypatch.setattr(users_service, "add_credits", _boom)

    with pytest.raises(PersistenceError):
        service.reconcile_from_webhook(SHOP, _webhook_event())

    monkeypatch.undo()
    assert db_session.query(CreditGrant).count() == 0
    assert db_session.query(Subscription).count() == 0
    user = _user(db_session)
    assert (user.plan, user.credits) == ("free", 10)


# ----------------------------------------------------------------------
# Snapshot path
# ----------------------------------------------------------------------
def test_snapshot_is_idempotent(db_session, service):
    snapshot = [_snapshot_entry()]

    first = service.reconcile_from_snapshot(SHOP, snapshot)
    credits_after_first = _user(db_session).credits
    second = service.reconcile_from_snapshot(SHOP, snapshot)

    assert first.updated is True
    assert first.plan == "starter"
    assert first.credits == 110
    assert second.updated is False
    assert _user(db_session).credits == credits_after_first == 110


def test_empty_snapshot_never_downgrades(db_session, service):
    service.reconcile_from_snapshot(SHOP, [_snapshot_entry(name="Pro Plan")])

    result = service.reconcile_from_snapshot(SHOP, [])

    assert result.updated is False
    assert result.plan == "pro"
    assert _user(db_session).plan == "pro"


def test_empty_snapshot_creates_user_on_first_contact(db_session, service):
    result = service.reconcile_from_snapshot(SHOP, [])

    assert result.updated is False
    assert (result.plan, result.credits) == ("free", 10)


def test_snapshot_uses_first_entry(db_session, service):
    result = service.reconcile_from_snapshot(
        SHOP,
        [
            _snapshot_entry(name="Pro Plan"),
            _snapshot_entry(id="gid://shopify/AppSubscription/9", name="Enterprise Plan"),
        ],
    )

    assert result.plan == "pro"
    assert result.credits == 510
    assert db_session.query(Subscription).count() == 1


def test_snapshot_after_webhook_is_a_noop(db_session, service):
    service.reconcile_from_webhook(SHOP, _webhook_event())

    result = service.reconcile_from_snapshot(SHOP, [_snapshot_entry()])

    assert result.updated is False
    assert _user(db_session).credits == 110


# ----------------------------------------------------------------------
# Manual override
# ----------------------------------------------------------------------
def test_manual_override_sets_plan_and_catalog_credits(db_session, service):
    service.reconcile_from_snapshot(SHOP, [_snapshot_entry()])

    user = service.manual_override(SHOP, "enterprise")

    assert user.plan == "enterprise"
    assert user.credits == 999_999
    assert db_session.query(Subscription).one().plan_name == "Starter Plan"
    sources = {grant.source for grant in db_session.query(CreditGrant).all()}
    assert sources == {"subscription", "admin"}


def test_manual_override_rejects_unknown_plan(service):
    with pytest.raises(BillingValidationError):
        service.manual_override(SHOP, "Starter Plan")
