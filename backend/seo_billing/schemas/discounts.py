from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RedeemDiscountIn(BaseModel):
    # Length and emptiness are checked by the service so the messages match the CLI and API.
    code: str = Field(default="", max_length=255)


class RedeemDiscountOut(BaseModel):
    success: bool
    credits_granted: int
    new_balance: int


class DiscountCodeCreate(BaseModel):
    code: str
    credits: int = Field(gt=0)
    max_uses: int | None = Field(default=None, gt=0)
    expires_at: datetime | None = None
    description: str | None = Field(default=None, max_length=2000)

    @field_validator("code")
    @staticmethod
    def _validate_code(value: str) -> str:
        normalized = (value or "").strip().upper()
        if not normalized:
            raise ValueError("code is required")
        return normalized


class DiscountRedemptionOut(BaseModel):
    shop: str
    credits_granted: int
    redeemed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DiscountCodeOut(BaseModel):
    id: int
    code: str
    credits_to_grant: int
    max_uses: int | None = None
    current_uses: int
    is_active: bool
    expires_at: datetime | None = None
    description: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DiscountCodeDetailOut(DiscountCodeOut):
    redemptions: list[DiscountRedemptionOut] = []


class DiscountCodeListItem(DiscountCodeOut):
    redemption_count: int = 0
    expired: bool = False
