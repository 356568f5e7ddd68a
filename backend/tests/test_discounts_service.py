from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from seo_billing.models.credit import CreditGrant
from seo_billing.models.discount_code import DiscountCode, DiscountCodeRedemption
from seo_billing.services import users as users_service
from seo_billing.services.discounts import (
    ALREADY_REDEEMED_MESSAGE,
    DiscountService,
    RedemptionErrorCode,
)
from seo_billing.services.errors import BillingValidationError, ConflictError, NotFoundError

SHOP_A = "shop-a.myshopify.com"
SHOP_B = "shop-b.myshopify.com"


@pytest.fixture()
def service(db_session):
    return DiscountService(db_session)


@pytest.fixture()
def welcome50(service):
    return service.create_discount_code("welcome50", 50, description="Welcome bonus")


def test_redeem_grants_credits_once_per_shop(db_session, service, welcome50):
    first = service.redeem_discount_code("WELCOME50", SHOP_A)
    second = service.redeem_discount_code("WELCOME50", SHOP_A)

    assert first.success is True
    assert first.credits_granted == 50
    assert first.new_balance == 60

    assert second.success is False
    assert second.error == ALREADY_REDEEMED_MESSAGE
    assert second.error_code == RedemptionErrorCode.ALREADY_REDEEMED
    assert users_service.get_user_by_shop(db_session, SHOP_A).credits == 60


def test_other_shops_redeem_independently(db_session, service, welcome50):
    service.redeem_discount_code("WELCOME50", SHOP_A)

    result = service.redeem_discount_code("welcome50", SHOP_B)

    assert result.success is True
    assert result.new_balance == 60
    assert db_session.query(DiscountCodeRedemption).count() == 2
    db_session.refresh(welcome50)
    assert welcome50.current_uses == 2


def test_second_session_hits_the_unique_constraint(db_session, session_factory, welcome50):
    """
    A repeat from a separate session is rejected by UNIQUE(code, shop), not by a prior read.

    The sessions run one after the other; this does not exercise truly concurrent requests.
    """
    first_db = session_factory()
    second_db = session_factory()
    try:
        outcomes = [
            DiscountService(first_db).redeem_discount_code("WELCOME50", SHOP_A),
            DiscountService(second_db).redeem_discount_code("WELCOME50", SHOP_A),
        ]
    finally:
        first_db.close()
        second_db.close()

    assert sorted(o.success for o in outcomes) == [False, True]
    loser = next(o for o in outcomes if not o.success)
    assert loser.error == ALREADY_REDEEMED_MESSAGE
    assert db_session.query(DiscountCodeRedemption).count() == 1
    assert users_service.get_user_by_shop(db_session, SHOP_A).credits == 60


def test_redemption_records_ledger_entry(db_session, service, welcome50):
    service.redeem_discount_code("WELCOME50", SHOP_A)

    grant = db_session.query(CreditGrant).one()
    assert grant.amount == 50
    assert grant.source == "discount"
    assert grant.idempotency_key == f"discount:{welcome50.id}"


@pytest.mark.parametrize(
    "code, message",
    [
        ("", "Discount code cannot be empty"),
        ("   ", "Discount code cannot be empty"),
        (None, "Discount code cannot be empty"),
        ("X" * 51, "Discount code is too long"),
    ],
)
def test_input_validation_skips_database(db_session, service, code, message):
    result = service.redeem_discount_code(code, SHOP_A)

    assert result.success is False
    assert result.error == message
    assert result.error_code == RedemptionErrorCode.INVALID_INPUT
    # No user was created: the request never reached the store.
    assert users_service.get_user_by_shop(db_session, SHOP_A) is None


def test_unknown_code(service):
    result = service.redeem_discount_code("NOPE", SHOP_A)

    assert result.success is False
    assert result.error_code == RedemptionErrorCode.NOT_FOUND
    assert result.error == "Invalid discount code"


def test_inactive_code(service, welcome50):
    service.deactivate_discount_code("welcome50")

    result = service.redeem_discount_code("WELCOME50", SHOP_A)

    assert result.error_code == RedemptionErrorCode.INACTIVE


def test_expired_code(service):
    service.create_discount_code(
        "OLD10",
        10,
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
    )

    result = service.redeem_discount_code("old10", SHOP_A)

    assert result.success is False
    assert result.error_code == RedemptionErrorCode.EXPIRED


def test_global_usage_limit(db_session, service):
    service.create_discount_code("ONCE", 5, max_uses=1)

    assert service.redeem_discount_code("ONCE", SHOP_A).success is True
    result = service.redeem_discount_code("ONCE", SHOP_B)

    assert result.success is False
    assert result.error_code == RedemptionErrorCode.USAGE_LIMIT
    # The losing shop's redemption row was rolled back with the failed claim.
    assert db_session.query(DiscountCodeRedemption).count() == 1
    assert users_service.get_user_by_shop(db_session, SHOP_B).credits == 10


def test_create_duplicate_code_conflicts(service, welcome50):
    with pytest.raises(ConflictError):
        service.create_discount_code("Welcome50", 10)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"code": "", "credits": 10},
        {"code": "A" * 51, "credits": 10},
        {"code": "ZERO", "credits": 0},
        {"code": "CAP", "credits": 10, "max_uses": 0},
    ],
)
def test_create_validates_input(service, kwargs):
    code = kwargs.pop("code")
    credits = kwargs.pop("credits")
    with pytest.raises(BillingValidationError):
        service.create_discount_code(code, credits, **kwargs)


def test_get_and_list_codes(service, welcome50):
    service.create_discount_code("SPRING", 25, max_uses=10)
    service.redeem_discount_code("WELCOME50", SHOP_A)
    service.redeem_discount_code("WELCOME50", SHOP_B)

    fetched = service.get_discount_code(" welcome50 ")
    assert sorted(r.shop for r in fetched.redemptions) == [SHOP_A, SHOP_B]

    counts = {summary.code.code: summary.redemption_count for summary in service.list_discount_codes()}
    assert counts == {"WELCOME50": 2, "SPRING": 0}


def test_get_unknown_code_raises(service):
    with pytest.raises(NotFoundError):
        service.get_discount_code("MISSING")


def test_deactivate_is_idempotent(db_session, service, welcome50):
    service.deactivate_discount_code("WELCOME50")
    again = service.deactivate_discount_code("WELCOME50")

    assert again.is_active is False
    assert db_session.query(DiscountCode).filter(DiscountCode.is_active.is_(True)).count() == 0
