from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from seo_billing.core.base import Base


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(Integer, primary_key=True, index=True)
    # Stored uppercase; lookups normalize the same way.
    code = Column(String(50), unique=True, index=True, nullable=False)
    credits_to_grant = Column(Integer, nullable=False)
    # Global cap across all shops; NULL = unlimited.
    max_uses = Column(Integer, nullable=True)
    current_uses = Column(Integer, nullable=False, server_default="0", default=0)
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    redemptions = relationship(
        "DiscountCodeRedemption",
        back_populates="discount_code",
        cascade="all, delete-orphan",
        order_by="DiscountCodeRedemption.redeemed_at",
    )


class DiscountCodeRedemption(Base):
    __tablename__ = "discount_code_redemptions"

    id = Column(Integer, primary_key=True, index=True)
    discount_code_id = Column(
        Integer,
        ForeignKey("discount_codes.id", ondelete="CASCADE"),
        nullable=False,
    )
    shop = Column(String(255), nullable=False, index=True)
    credits_granted = Column(Integer, nullable=False)
    redeemed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    discount_code = relationship("DiscountCode", back_populates="redemptions")

    __table_args__ = (
        # One redemption per shop per code. This constraint is the only "already used" check.
        UniqueConstraint("discount_code_id", "shop", name="uq_discount_redemptions_code_shop"),
    )
