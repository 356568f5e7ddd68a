# seo_billing/models/user.py
from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship

from seo_billing.core.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Normalized myshopify domain (lowercase, trimmed). One row per shop.
    shop = Column(String(255), unique=True, index=True, nullable=False)
    # Canonical plan key: free | starter | pro | enterprise. Never a display name.
    plan = Column(String(20), nullable=False, server_default="free", default="free")
    credits = Column(Integer, nullable=False, server_default="10", default=10)
    onboarding_completed = Column(Boolean, nullable=False, server_default="false", default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    subscriptions = relationship(
        "Subscription",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )
