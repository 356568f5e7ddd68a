from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from seo_billing.core.config import settings
from seo_billing.core.time_utils import as_utc, utc_now
from seo_billing.models.credit import CreditGrantSource
from seo_billing.models.discount_code import DiscountCode, DiscountCodeRedemption
from seo_billing.services import users as users_service
from seo_billing.services.credits import CreditsService, discount_grant_key
from seo_billing.services.errors import (
    BillingError,
    BillingValidationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

ALREADY_REDEEMED_MESSAGE = "You have already used this discount code"


class RedemptionErrorCode(str, Enum):
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    USAGE_LIMIT = "usage_limit_reached"
    ALREADY_REDEEMED = "already_redeemed"


@dataclass
class RedemptionResult:
    success: bool
    credits_granted: int = 0
    new_balance: int | None = None
    error: str | None = None
    error_code: RedemptionErrorCode | None = None

    @classmethod
    def failed(cls, code: RedemptionErrorCode, message: str) -> "RedemptionResult":
        return cls(success=False, error=message, error_code=code)


@dataclass
class DiscountCodeSummary:
    code: DiscountCode
    redemption_count: int


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _validate_code_input(normalized: str) -> str | None:
    if not normalized:
        return "Discount code cannot be empty"
    if len(normalized) > settings.DISCOUNT_CODE_MAX_LENGTH:
        return "Discount code is too long"
    return None


def _is_expired(code: DiscountCode, now: datetime) -> bool:
    return code.expires_at is not None and as_utc(code.expires_at) <= now


class DiscountService:
    """
    Discount code redemption and admin management.

    One redemption per (code, shop) is enforced by the unique constraint on
    discount_code_redemptions; the insert is the check. Validation and business
    rejections come back as RedemptionResult values; storage failures raise.
    """

    def __init__(self, db: Session):
        self.db = db
        self.credits = CreditsService(db)

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------
    def redeem_discount_code(self, code: str | None, shop: str) -> RedemptionResult:
        normalized = normalize_code(code)
        problem = _validate_code_input(normalized)
        if problem:
            return RedemptionResult.failed(RedemptionErrorCode.INVALID_INPUT, problem)

        discount = self._find(normalized)
        if discount is None:
            return RedemptionResult.failed(RedemptionErrorCode.NOT_FOUND, "Invalid discount code")
        if not discount.is_active:
            return RedemptionResult.failed(RedemptionErrorCode.INACTIVE, "This discount code is no longer active")
        if _is_expired(discount, utc_now()):
            return RedemptionResult.failed(RedemptionErrorCode.EXPIRED, "This discount code has expired")

        discount_id = discount.id
        credits_to_grant = int(discount.credits_to_grant)
        user = users_service.get_or_create_user(self.db, shop)
        user_id, user_shop = user.id, user.shop

        try:
            self.db.add(
                DiscountCodeRedemption(
                    discount_code_id=discount_id,
                    shop=user_shop,
                    credits_granted=credits_to_grant,
                )
            )
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                logger.info("Shop %s tried to redeem %s again", user_shop, normalized)
                return RedemptionResult.failed(RedemptionErrorCode.ALREADY_REDEEMED, ALREADY_REDEEMED_MESSAGE)

            claimed = self.db.execute(
                update(DiscountCode)
                .where(
                    DiscountCode.id == discount_id,
                    or_(DiscountCode.max_uses.is_(None), DiscountCode.current_uses < DiscountCode.max_uses),
                )
                .values(current_uses=DiscountCode.current_uses + 1)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                self.db.rollback()
                return RedemptionResult.failed(
                    RedemptionErrorCode.USAGE_LIMIT,
                    "This discount code has reached its usage limit",
                )

            updated = users_service.add_credits(self.db, user_shop, credits_to_grant, commit=False)
            self.credits.record_grant(
                user_id,
                amount=credits_to_grant,
                source=CreditGrantSource.DISCOUNT,
                idempotency_key=discount_grant_key(discount_id),
                source_ref=normalized,
                description=f"Discount code {normalized}",
            )
            new_balance = int(updated.credits)
            self.db.commit()
        except BillingError:
            self.db.rollback()
            raise
        except IntegrityError:
            # Ledger key collision: the same shop already got this code's credits.
            self.db.rollback()
            return RedemptionResult.failed(RedemptionErrorCode.ALREADY_REDEEMED, ALREADY_REDEEMED_MESSAGE)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Redeeming %s failed for shop %s", normalized, user_shop)
            raise PersistenceError("Failed to redeem discount code") from exc

        logger.info(
            "Shop %s redeemed %s for %s credits (balance=%s)",
            user_shop,
            normalized,
            credits_to_grant,
            new_balance,
        )
        return RedemptionResult(success=True, credits_granted=credits_to_grant, new_balance=new_balance)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------
    def create_discount_code(
        self,
        code: str,
        credits: int,
        *,
        max_uses: int | None = None,
        expires_at: datetime | None = None,
        description: str | None = None,
    ) -> DiscountCode:
        normalized = normalize_code(code)
        problem = _validate_code_input(normalized)
        if problem:
            raise BillingValidationError(problem)
        if int(credits) <= 0:
            raise BillingValidationError("credits must be positive")
        if max_uses is not None and int(max_uses) <= 0:
            raise BillingValidationError("max_uses must be positive")

        discount = DiscountCode(
            code=normalized,
            credits_to_grant=int(credits),
            max_uses=int(max_uses) if max_uses is not None else None,
            current_uses=0,
            is_active=True,
            expires_at=expires_at,
            description=description.strip() if description and description.strip() else None,
        )
        self.db.add(discount)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError(f"A discount code named {normalized} already exists") from exc
        self.db.refresh(discount)
        logger.info("Created discount code %s (%s credits)", normalized, discount.credits_to_grant)
        return discount

    def get_discount_code(self, code: str) -> DiscountCode:
        discount = self._find(normalize_code(code))
        if discount is None:
            raise NotFoundError("Discount code not found")
        return discount

    def deactivate_discount_code(self, code: str) -> DiscountCode:
        discount = self.get_discount_code(code)
        if discount.is_active:
            discount.is_active = False
            self.db.commit()
            self.db.refresh(discount)
            logger.info("Deactivated discount code %s", discount.code)
        return discount

    def list_discount_codes(self) -> list[DiscountCodeSummary]:
        redemption_counts = (
            self.db.query(
                DiscountCodeRedemption.discount_code_id,
                func.count(DiscountCodeRedemption.id).label("redemption_count"),
            )
            .group_by(DiscountCodeRedemption.discount_code_id)
            .subquery()
        )
        rows = (
            self.db.query(DiscountCode, func.coalesce(redemption_counts.c.redemption_count, 0))
            .outerjoin(redemption_counts, redemption_counts.c.discount_code_id == DiscountCode.id)
            .order_by(DiscountCode.created_at.desc(), DiscountCode.id.desc())
            .all()
        )
        return [DiscountCodeSummary(code=row[0], redemption_count=int(row[1])) for row in rows]

    def _find(self, normalized: str) -> DiscountCode | None:
        return self.db.query(DiscountCode).filter(DiscountCode.code == normalized).first()
