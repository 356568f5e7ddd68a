"""
Plan catalog and plan-name normalization.

Shopify, webhooks and the pricing UI spell plan names several ways
("Starter Plan", "starter_plan", "B1 Bulk Product SEO Optimizer - Starter").
Everything funnels through `canonical_plan_key`, which resolves a raw name in
this order:

1. exact match against PLAN_ALIASES
2. case-insensitive match
3. for partner-dashboard names "<App> - <Plan>", steps 1-2 on the last segment
4. otherwise "free"

Unknown names always land on the free tier so they can never grant more
credits than the safest plan.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PlanKey(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class PlanLimits:
    bulk_optimization: int
    api_access: bool
    competitor_analysis: bool
    voice_search: bool
    priority_support: bool


@dataclass(frozen=True)
class Plan:
    key: PlanKey
    display_name: str
    billing_id: str | None
    credits: int
    limits: PlanLimits


UNLIMITED_CREDITS = 999_999

PLAN_CATALOG: dict[PlanKey, Plan] = {
    PlanKey.FREE: Plan(
        key=PlanKey.FREE,
        display_name="Free Plan",
        billing_id=None,
        credits=10,
        limits=PlanLimits(
            bulk_optimization=1,
            api_access=False,
            competitor_analysis=False,
            voice_search=False,
            priority_support=False,
        ),
    ),
    PlanKey.STARTER: Plan(
        key=PlanKey.STARTER,
        display_name="Starter Plan",
        billing_id="starter_plan",
        credits=100,
        limits=PlanLimits(
            bulk_optimization=10,
            api_access=False,
            competitor_analysis=False,
            voice_search=False,
            priority_support=False,
        ),
    ),
    PlanKey.PRO: Plan(
        key=PlanKey.PRO,
        display_name="Pro Plan",
        billing_id="pro_plan",
        credits=500,
        limits=PlanLimits(
            bulk_optimization=100,
            api_access=False,
            competitor_analysis=True,
            voice_search=True,
            priority_support=True,
        ),
    ),
    PlanKey.ENTERPRISE: Plan(
        key=PlanKey.ENTERPRISE,
        display_name="Enterprise Plan",
        billing_id="enterprise_plan",
        credits=UNLIMITED_CREDITS,
        limits=PlanLimits(
            bulk_optimization=UNLIMITED_CREDITS,
            api_access=True,
            competitor_analysis=True,
            voice_search=True,
            priority_support=True,
        ),
    ),
}


def _build_aliases() -> dict[str, PlanKey]:
    aliases: dict[str, PlanKey] = {}
    for plan in PLAN_CATALOG.values():
        aliases[plan.key.value] = plan.key
        aliases[plan.display_name] = plan.key
        # Partner dashboard / managed pricing uses the bare tier name, e.g. "Starter".
        aliases[plan.display_name.removesuffix(" Plan")] = plan.key
        if plan.billing_id:
            aliases[plan.billing_id] = plan.key
    return aliases


PLAN_ALIASES: dict[str, PlanKey] = _build_aliases()
_CASEFOLDED_ALIASES: dict[str, PlanKey] = {name.casefold(): key for name, key in PLAN_ALIASES.items()}

PARTNER_NAME_SEPARATOR = " - "


def _match(name: str) -> PlanKey | None:
    exact = PLAN_ALIASES.get(name)
    if exact is not None:
        return exact
    return _CASEFOLDED_ALIASES.get(name.casefold())


def canonical_plan_key(raw_plan_name: str | None) -> PlanKey:
    name = (raw_plan_name or "").strip()
    if not name:
        return PlanKey.FREE

    matched = _match(name)
    if matched is not None:
        return matched

    if PARTNER_NAME_SEPARATOR in name:
        suffix = name.rsplit(PARTNER_NAME_SEPARATOR, 1)[1].strip()
        matched = _match(suffix) if suffix else None
        if matched is not None:
            return matched

    return PlanKey.FREE


def get_plan(raw_plan_name: str | None) -> Plan:
    return PLAN_CATALOG[canonical_plan_key(raw_plan_name)]


def credits_for_plan(raw_plan_name: str | None) -> int:
    return get_plan(raw_plan_name).credits


def get_plan_limits(raw_plan_name: str | None) -> PlanLimits:
    return get_plan(raw_plan_name).limits


def is_valid_plan_key(value: str | None) -> bool:
    try:
        PlanKey((value or "").strip().lower())
    except ValueError:
        return False
    return True
