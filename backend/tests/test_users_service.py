from __future__ import annotations

import pytest
from sqlalchemy.orm import Query

from seo_billing.models.user import User
from seo_billing.services import users as users_service
from seo_billing.services.errors import BillingValidationError, NotFoundError
from seo_billing.services.plans import PlanKey


def test_get_or_create_defaults(db_session):
    user = users_service.get_or_create_user(db_session, "Shop-A.myshopify.com ")

    assert user.shop == "shop-a.myshopify.com"
    assert user.plan == "free"
    assert user.credits == 10
    assert user.onboarding_completed is False


def test_get_or_create_is_idempotent(db_session):
    first = users_service.get_or_create_user(db_session, "shop-a.myshopify.com")
    second = users_service.get_or_create_user(db_session, "https://SHOP-A.myshopify.com/")

    assert first.id == second.id
    assert db_session.query(User).count() == 1


def test_get_or_create_recovers_from_concurrent_insert(db_session, session_factory, monkeypatch):
    """
    Simulate the race: this request looks the shop up, sees nothing, and by the
    time it inserts another request has already committed the row.
    """
    other = session_factory()
    try:
        users_service.get_or_create_user(other, "shop-a.myshopify.com")
    finally:
        other.close()

    original_first = Query.first
    calls = {"n": 0}

    def _first_misses_once(self):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return original_first(self)

    monkeypatch.setattr(Query, "first", _first_misses_once)

    user = users_service.get_or_create_user(db_session, "shop-a.myshopify.com")

    assert user.shop == "shop-a.myshopify.com"
    assert user.credits == 10
    assert user.plan == "free"
    monkeypatch.undo()
    assert db_session.query(User).count() == 1


def test_empty_shop_rejected(db_session):
    with pytest.raises(BillingValidationError):
        users_service.get_or_create_user(db_session, "   ")


def test_add_credits_is_additive(db_session):
    users_service.get_or_create_user(db_session, "shop-a.myshopify.com")

    user = users_service.add_credits(db_session, "shop-a.myshopify.com", 50)
    assert user.credits == 60

    user = users_service.add_credits(db_session, "shop-a.myshopify.com", -20)
    assert user.credits == 40


def test_add_credits_never_goes_negative(db_session):
    users_service.get_or_create_user(db_session, "shop-a.myshopify.com")

    with pytest.raises(BillingValidationError):
        users_service.add_credits(db_session, "shop-a.myshopify.com", -11)

    db_session.rollback()
    assert users_service.get_user_by_shop(db_session, "shop-a.myshopify.com").credits == 10


def test_set_plan_and_credits(db_session):
    users_service.get_or_create_user(db_session, "shop-a.myshopify.com")

    user = users_service.set_plan_and_credits(db_session, "shop-a.myshopify.com", PlanKey.PRO, 500)
    assert (user.plan, user.credits) == ("pro", 500)

    user = users_service.set_plan(db_session, "shop-a.myshopify.com", "free")
    assert (user.plan, user.credits) == ("free", 500)

    user = users_service.set_credits(db_session, "shop-a.myshopify.com", 3)
    assert user.credits == 3


def test_set_plan_rejects_display_names(db_session):
    users_service.get_or_create_user(db_session, "shop-a.myshopify.com")

    with pytest.raises(BillingValidationError):
        users_service.set_plan(db_session, "shop-a.myshopify.com", "Pro Plan")


def test_set_credits_rejects_negative(db_session):
    users_service.get_or_create_user(db_session, "shop-a.myshopify.com")

    with pytest.raises(BillingValidationError):
        users_service.set_credits(db_session, "shop-a.myshopify.com", -1)


def test_mutations_require_existing_user(db_session):
    with pytest.raises(NotFoundError):
        users_service.add_credits(db_session, "ghost.myshopify.com", 5)
    with pytest.raises(NotFoundError):
        users_service.lock_user(db_session, "ghost.myshopify.com")
