from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from seo_billing.core.base import Base


class CreditGrantSource(str, Enum):
    SUBSCRIPTION = "subscription"
    DISCOUNT = "discount"
    ADMIN = "admin"


class CreditGrant(Base):
    """Append-only record of every credit grant; the idempotency key guards re-delivery."""

    __tablename__ = "credit_grants"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = Column(Integer, nullable=False)
    source = Column(String(50), nullable=False)
    source_ref = Column(String(255), nullable=True, index=True)
    idempotency_key = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    user = relationship("User", backref="credit_grants")

    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_credit_grants_user_idempotency"),
    )
