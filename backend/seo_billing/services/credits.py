from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from seo_billing.core.time_utils import as_utc
from seo_billing.models.credit import CreditGrant, CreditGrantSource


@dataclass
class GrantOutcome:
    entry: CreditGrant
    created: bool


def subscription_grant_key(subscription_id: str, period_end: datetime) -> str:
    """One grant per (subscription, billing period); period_end is truncated to seconds in UTC."""
    stamp = as_utc(period_end).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"subscription:{subscription_id}:{stamp}"


def discount_grant_key(discount_code_id: int) -> str:
    return f"discount:{discount_code_id}"


class CreditsService:
    """
    Helpers around the credit grant ledger. The user's `credits` column is the
    spendable balance; the ledger records why credits were added and makes
    additive grants idempotent through `(user_id, idempotency_key)`.
    """

    MAX_PAGE_SIZE = 200

    def __init__(self, db: Session):
        self.db = db

    def find_grant(self, user_id: int, idempotency_key: str) -> CreditGrant | None:
        return (
            self.db.query(CreditGrant)
            .filter(CreditGrant.user_id == user_id, CreditGrant.idempotency_key == idempotency_key)
            .first()
        )

    def record_grant(
        self,
        user_id: int,
        *,
        amount: int,
        source: CreditGrantSource | str,
        idempotency_key: str,
        source_ref: str | None = None,
        description: str | None = None,
    ) -> GrantOutcome:
        """
        Insert a grant unless one with the same idempotency key already exists.

        Flushes but does not commit: the caller owns the transaction so the grant
        and the balance update land together. A concurrent insert of the same key
        surfaces as IntegrityError at flush.
        """
        normalized_key = (idempotency_key or "").strip()
        if not normalized_key:
            raise ValueError("idempotency_key is required")
        if int(amount) < 0:
            raise ValueError("amount must not be negative")

        existing = self.find_grant(user_id, normalized_key)
        if existing:
            return GrantOutcome(entry=existing, created=False)

        normalized_source = CreditGrantSource(source).value
        entry = CreditGrant(
            user_id=user_id,
            amount=int(amount),
            source=normalized_source,
            source_ref=source_ref.strip() if isinstance(source_ref, str) and source_ref.strip() else None,
            idempotency_key=normalized_key,
            description=description.strip() if isinstance(description, str) and description.strip() else None,
        )
        self.db.add(entry)
        self.db.flush()
        return GrantOutcome(entry=entry, created=True)

    def list_grants(self, user_id: int, *, limit: int = 50, offset: int = 0) -> list[CreditGrant]:
        normalized_limit = max(1, min(int(limit or 50), self.MAX_PAGE_SIZE))
        normalized_offset = max(0, int(offset or 0))
        return (
            self.db.query(CreditGrant)
            .filter(CreditGrant.user_id == user_id)
            .order_by(CreditGrant.created_at.desc(), CreditGrant.id.desc())
            .offset(normalized_offset)
            .limit(normalized_limit)
            .all()
        )
