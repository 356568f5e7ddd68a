from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from seo_billing.core.config import settings
from seo_billing.core.database import get_db
from seo_billing.dependencies.auth import get_current_shop
from seo_billing.dependencies.rate_limit import require_rate_limit
from seo_billing.dependencies.shopify import get_shopify_client_factory
from seo_billing.models.user import User
from seo_billing.schemas.billing import PlanLimitsOut, UserStateOut
from seo_billing.schemas.discounts import RedeemDiscountIn, RedeemDiscountOut
from seo_billing.services.billing_sync import ClientFactory, sync_shop_billing
from seo_billing.services.discounts import DiscountService, RedemptionErrorCode
from seo_billing.services.errors import NotFoundError, UpstreamError
from seo_billing.services.plans import get_plan_limits
from seo_billing.services.users import get_or_create_user, get_user_by_shop

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

_REDEMPTION_STATUS: dict[RedemptionErrorCode, int] = {
    RedemptionErrorCode.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    RedemptionErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RedemptionErrorCode.INACTIVE: status.HTTP_400_BAD_REQUEST,
    RedemptionErrorCode.EXPIRED: status.HTTP_400_BAD_REQUEST,
    RedemptionErrorCode.USAGE_LIMIT: status.HTTP_400_BAD_REQUEST,
    RedemptionErrorCode.ALREADY_REDEEMED: status.HTTP_409_CONFLICT,
}


def _user_state(user: User, *, synced: bool, sync_updated: bool = False) -> UserStateOut:
    return UserStateOut(
        shop=user.shop,
        plan=user.plan,
        credits=user.credits,
        onboarding_completed=bool(user.onboarding_completed),
        limits=PlanLimitsOut.model_validate(get_plan_limits(user.plan)),
        synced=synced,
        sync_updated=sync_updated,
    )


def _reload_user(db: Session, shop: str) -> User:
    user = get_user_by_shop(db, shop)
    if user is None:
        raise NotFoundError(f"User not found for shop {shop}")
    db.refresh(user)
    return user


@router.get("/me", response_model=UserStateOut)
def get_billing_state(
    db: Session = Depends(get_db),
    shop: str = Depends(get_current_shop),
    client_factory: ClientFactory = Depends(get_shopify_client_factory),
) -> UserStateOut:
    """
    Current plan and credits for the calling shop.

    Polls Shopify on every call as a fallback for missed webhooks. If Shopify is
    unreachable the stored state is returned unchanged with `synced=false`.
    """
    get_or_create_user(db, shop)
    try:
        result = sync_shop_billing(db, shop, client_factory=client_factory)
    except (UpstreamError, NotFoundError) as exc:
        logger.warning("Billing poll skipped for %s: %s", shop, exc)
        return _user_state(_reload_user(db, shop), synced=False)

    return _user_state(_reload_user(db, shop), synced=True, sync_updated=result.updated)


@router.post("/sync", response_model=UserStateOut)
def sync_billing_state(
    db: Session = Depends(get_db),
    shop: str = Depends(get_current_shop),
    client_factory: ClientFactory = Depends(get_shopify_client_factory),
) -> UserStateOut:
    get_or_create_user(db, shop)
    try:
        result = sync_shop_billing(db, shop, client_factory=client_factory)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _user_state(_reload_user(db, shop), synced=True, sync_updated=result.updated)


@router.post(
    "/discounts/redeem",
    response_model=RedeemDiscountOut,
    dependencies=[
        Depends(
            require_rate_limit(
                "redeem_discount",
                limit=settings.REDEEM_RATE_LIMIT_MAX_ATTEMPTS,
                window_seconds=settings.REDEEM_RATE_LIMIT_WINDOW_SECONDS,
            )
        )
    ],
)
def redeem_discount(
    payload: RedeemDiscountIn,
    db: Session = Depends(get_db),
    shop: str = Depends(get_current_shop),
) -> RedeemDiscountOut:
    result = DiscountService(db).redeem_discount_code(payload.code, shop)
    if not result.success:
        raise HTTPException(
            status_code=_REDEMPTION_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
            detail={"message": result.error, "details": {"reason": result.error_code.value}},
        )
    return RedeemDiscountOut(
        success=True,
        credits_granted=result.credits_granted,
        new_balance=result.new_balance,
    )
