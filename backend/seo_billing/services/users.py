# seo_billing/services/users.py
"""
User/credit store.

Responsibilities:
- One User row per shop, created idempotently on first contact
- Plan and credit mutations as single atomic UPDATE statements
- Row locking so concurrent reconciliation for the same shop is serialized
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from seo_billing.core.config import settings
from seo_billing.models.user import User
from seo_billing.services.errors import BillingValidationError, NotFoundError
from seo_billing.services.plans import PlanKey

logger = logging.getLogger(__name__)


def normalize_shop(shop: str | None) -> str:
    """Lowercase, trim and strip any scheme or trailing slash from a shop domain."""
    value = (shop or "").strip().lower()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    value = value.rstrip("/")
    if not value:
        raise BillingValidationError("shop is required")
    return value


def _normalize_plan(plan: str | PlanKey) -> str:
    try:
        return PlanKey(plan).value
    except ValueError as exc:
        raise BillingValidationError(f"Unknown plan key: {plan}") from exc


def _require_non_negative(credits: int) -> int:
    value = int(credits)
    if value < 0:
        raise BillingValidationError("credits cannot be negative")
    return value


def get_user_by_shop(db: Session, shop: str) -> Optional[User]:
    """Look up a user by shop domain."""
    return db.query(User).filter(User.shop == normalize_shop(shop)).first()


def get_or_create_user(db: Session, shop: str) -> User:
    """
    Return the user for a shop, creating it with the free defaults on first contact.

    Two requests racing to create the same shop both end up with the same row:
    the loser hits the unique constraint on `shop`, rolls back and re-reads.
    """
    normalized = normalize_shop(shop)
    user = db.query(User).filter(User.shop == normalized).first()
    if user:
        return user

    user = User(
        shop=normalized,
        plan=PlanKey.FREE.value,
        credits=settings.DEFAULT_FREE_CREDITS,
        onboarding_completed=False,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(User).filter(User.shop == normalized).first()
        if existing is None:
            raise
        logger.info("User for shop %s was created concurrently; reusing it", normalized)
        return existing

    db.refresh(user)
    logger.info("Created new user for shop %s", normalized)
    return user


def lock_user(db: Session, shop: str) -> User:
    """SELECT ... FOR UPDATE on the shop's user row for the rest of the transaction."""
    user = (
        db.execute(
            select(User)
            .where(User.shop == normalize_shop(shop))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalars()
        .first()
    )
    if not user:
        raise NotFoundError(f"User not found for shop {shop}")
    return user


def _reload(db: Session, shop: str) -> User:
    user = (
        db.execute(
            select(User)
            .where(User.shop == shop)
            .execution_options(populate_existing=True)
        )
        .scalars()
        .first()
    )
    if not user:
        raise NotFoundError(f"User not found for shop {shop}")
    return user


def _finish(db: Session, shop: str, commit: bool) -> User:
    if commit:
        db.commit()
    else:
        db.flush()
    return _reload(db, shop)


def set_plan_and_credits(
    db: Session,
    shop: str,
    plan: str | PlanKey,
    credits: int,
    *,
    commit: bool = True,
) -> User:
    normalized = normalize_shop(shop)
    result = db.execute(
        update(User)
        .where(User.shop == normalized)
        .values(plan=_normalize_plan(plan), credits=_require_non_negative(credits))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"User not found for shop {normalized}")
    return _finish(db, normalized, commit)


def set_plan(db: Session, shop: str, plan: str | PlanKey, *, commit: bool = True) -> User:
    """Change the plan only; the credit balance is left as is."""
    normalized = normalize_shop(shop)
    result = db.execute(
        update(User)
        .where(User.shop == normalized)
        .values(plan=_normalize_plan(plan))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"User not found for shop {normalized}")
    return _finish(db, normalized, commit)


def add_credits(db: Session, shop: str, delta: int, *, commit: bool = True) -> User:
    """
    Atomically add `delta` to the balance (credits = credits + delta).

    A negative delta that would take the balance below zero is rejected.
    """
    normalized = normalize_shop(shop)
    amount = int(delta)
    result = db.execute(
        update(User)
        .where(User.shop == normalized, User.credits + amount >= 0)
        .values(credits=User.credits + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if get_user_by_shop(db, normalized) is None:
            raise NotFoundError(f"User not found for shop {normalized}")
        raise BillingValidationError("credits cannot be negative")
    return _finish(db, normalized, commit)


def set_credits(db: Session, shop: str, credits: int, *, commit: bool = True) -> User:
    normalized = normalize_shop(shop)
    result = db.execute(
        update(User)
        .where(User.shop == normalized)
        .values(credits=_require_non_negative(credits))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"User not found for shop {normalized}")
    return _finish(db, normalized, commit)
