from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from utils.plans import PlanType

from .session import Base


class UserAccount(Base):
    __tablename__ = "user_accounts"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_user_accounts_credits_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    auth_sub: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    plan_type: Mapped[str] = mapped_column(String(16), default=PlanType.FREE.value, nullable=False)
    billing_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True, index=True)
    billing_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    grants: Mapped[list["CreditGrant"]] = relationship(
        "CreditGrant", back_populates="user", cascade="all, delete-orphan"
    )


class CreditGrant(Base):
    """One row per applied plan transition; the unique key makes grants exactly-once."""

    __tablename__ = "credit_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("user_accounts.id"), nullable=False, index=True)
    transition_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True, index=True)
    from_plan: Mapped[str] = mapped_column(String(16), nullable=False)
    to_plan: Mapped[str] = mapped_column(String(16), nullable=False)
    credits_granted: Mapped[int] = mapped_column(Integer, nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    user: Mapped["UserAccount"] = relationship("UserAccount", back_populates="grants")


class ProcessedBillingEvent(Base):
    __tablename__ = "billing_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    outcome: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
