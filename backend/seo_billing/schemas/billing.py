from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SUBSCRIPTION_GID_PREFIX = "gid://shopify/AppSubscription/"


def canonical_subscription_id(value: Any) -> str:
    """
    Webhooks carry both a numeric `id` and an `admin_graphql_api_id`; GraphQL
    returns the GID. Both resolve to the GID form.
    """
    text = str(value if value is not None else "").strip()
    if not text:
        raise ValueError("subscription id is required")
    if text.isdigit():
        return f"{SUBSCRIPTION_GID_PREFIX}{text}"
    return text


def _normalize_status(value: Any) -> str:
    text = str(value if value is not None else "").strip().lower()
    if not text:
        raise ValueError("status is required")
    return text


class SubscriptionEvent(BaseModel):
    """A single subscription update, as delivered by the app_subscriptions/update webhook."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    subscription_id: str = Field(
        validation_alias=AliasChoices("admin_graphql_api_id", "subscription_id", "subscriptionId", "id"),
    )
    plan_name: str = Field(default="", validation_alias=AliasChoices("name", "plan_name", "planName"))
    status: str
    period_start: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("current_period_start", "period_start", "periodStart", "currentPeriodStart"),
    )
    period_end: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("current_period_end", "period_end", "periodEnd", "currentPeriodEnd"),
    )
    trial_start: datetime | None = Field(default=None, validation_alias=AliasChoices("trial_start", "trialStart"))
    trial_end: datetime | None = Field(default=None, validation_alias=AliasChoices("trial_end", "trialEnd"))
    is_test: bool = Field(default=False, validation_alias=AliasChoices("test", "is_test", "isTest"))

    @field_validator("subscription_id", mode="before")
    @classmethod
    def _canonical_id(cls, value: Any) -> str:
        return canonical_subscription_id(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return _normalize_status(value)

    @field_validator("plan_name", mode="before")
    @classmethod
    def _plan_name(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("is_test", mode="before")
    @classmethod
    def _is_test(cls, value: Any) -> bool:
        return bool(value)


class ActiveSubscription(BaseModel):
    """One entry of currentAppInstallation.activeSubscriptions."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str = ""
    status: str
    current_period_end: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("currentPeriodEnd", "current_period_end"),
    )
    test: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _canonical_id(cls, value: Any) -> str:
        return canonical_subscription_id(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return _normalize_status(value)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("test", mode="before")
    @classmethod
    def _test(cls, value: Any) -> bool:
        return bool(value)


class PlanLimitsOut(BaseModel):
    bulk_optimization: int
    api_access: bool
    competitor_analysis: bool
    voice_search: bool
    priority_support: bool

    model_config = ConfigDict(from_attributes=True)


class UserStateOut(BaseModel):
    shop: str
    plan: str
    credits: int
    onboarding_completed: bool
    limits: PlanLimitsOut
    synced: bool = False
    sync_updated: bool = False


class ManualOverrideIn(BaseModel):
    plan: str

    @field_validator("plan")
    @staticmethod
    def _validate_plan(value: str) -> str:
        normalized = (value or "").strip().lower()
        if not normalized:
            raise ValueError("plan is required")
        return normalized


class CreditGrantOut(BaseModel):
    amount: int
    source: str
    source_ref: str | None = None
    idempotency_key: str
    description: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AdminUserOut(BaseModel):
    shop: str
    plan: str
    credits: int
    onboarding_completed: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
