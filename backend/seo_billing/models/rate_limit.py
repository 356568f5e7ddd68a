from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func

from seo_billing.core.base import Base


class RateLimit(Base):
    __tablename__ = "rate_limits"

    id = Column(Integer, primary_key=True, index=True)
    shop = Column(String(255), nullable=False, index=True)
    action = Column(String(100), nullable=False)
    count = Column(Integer, nullable=False, server_default="0", default=0)
    window_start = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("shop", "action", name="uq_rate_limits_shop_action"),
    )
