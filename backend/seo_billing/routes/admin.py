from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from seo_billing.core.database import get_db
from seo_billing.core.time_utils import as_utc, utc_now
from seo_billing.dependencies.admin import require_admin
from seo_billing.schemas.billing import AdminUserOut, CreditGrantOut, ManualOverrideIn
from seo_billing.schemas.discounts import (
    DiscountCodeCreate,
    DiscountCodeDetailOut,
    DiscountCodeListItem,
    DiscountCodeOut,
)
from seo_billing.services.credits import CreditsService
from seo_billing.services.discounts import DiscountService
from seo_billing.services.errors import NotFoundError
from seo_billing.services.reconciliation import ReconciliationService
from seo_billing.services.users import get_user_by_shop

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/users/{shop}/plan", response_model=AdminUserOut)
def override_plan(
    shop: str,
    payload: ManualOverrideIn,
    db: Session = Depends(get_db),
) -> AdminUserOut:
    user = ReconciliationService(db).manual_override(shop, payload.plan)
    return AdminUserOut.model_validate(user)


@router.get("/users/{shop}/grants", response_model=list[CreditGrantOut])
def list_credit_grants(
    shop: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> list[CreditGrantOut]:
    user = get_user_by_shop(db, shop)
    if user is None:
        raise NotFoundError(f"User not found for shop {shop}")
    grants = CreditsService(db).list_grants(user.id, limit=limit, offset=offset)
    return [CreditGrantOut.model_validate(grant) for grant in grants]


@router.get("/discount-codes", response_model=list[DiscountCodeListItem])
def list_discount_codes(db: Session = Depends(get_db)) -> list[DiscountCodeListItem]:
    now = utc_now()
    items: list[DiscountCodeListItem] = []
    for summary in DiscountService(db).list_discount_codes():
        base = DiscountCodeOut.model_validate(summary.code).model_dump()
        expires_at = summary.code.expires_at
        items.append(
            DiscountCodeListItem(
                **base,
                redemption_count=summary.redemption_count,
                expired=expires_at is not None and as_utc(expires_at) <= now,
            )
        )
    return items


@router.post("/discount-codes", response_model=DiscountCodeOut, status_code=status.HTTP_201_CREATED)
def create_discount_code(
    payload: DiscountCodeCreate,
    db: Session = Depends(get_db),
) -> DiscountCodeOut:
    discount = DiscountService(db).create_discount_code(
        payload.code,
        payload.credits,
        max_uses=payload.max_uses,
        expires_at=payload.expires_at,
        description=payload.description,
    )
    return DiscountCodeOut.model_validate(discount)


@router.get("/discount-codes/{code}", response_model=DiscountCodeDetailOut)
def get_discount_code(code: str, db: Session = Depends(get_db)) -> DiscountCodeDetailOut:
    return DiscountCodeDetailOut.model_validate(DiscountService(db).get_discount_code(code))


@router.post("/discount-codes/{code}/deactivate", response_model=DiscountCodeOut)
def deactivate_discount_code(code: str, db: Session = Depends(get_db)) -> DiscountCodeOut:
    return DiscountCodeOut.model_validate(DiscountService(db).deactivate_discount_code(code))
