"""Account model: one credit balance per tenant."""

from enum import Enum

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class SubscriptionStatus(str, Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    DECLINED = "DECLINED"


class Account(Base):
    """Spendable credit balance and plan state for a merchant.

    Rows are only mutated through ``services.ledger.Ledger``; every mutation is
    a single conditional UPDATE so concurrent requests never read-then-write.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        CheckConstraint("monthly_quota >= 0", name="ck_accounts_quota_non_negative"),
        CheckConstraint("max_tries_per_user >= 0", name="ck_accounts_max_tries_non_negative"),
    )

    tenant_id = Column(String, primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    monthly_quota = Column(Integer, nullable=False, default=0)
    last_reset_period = Column(String(7), nullable=True)  # YYYY-MM, UTC
    lifetime_credits = Column(Integer, nullable=False, default=0)
    total_consumed = Column(Integer, nullable=False, default=0)
    total_conversions = Column(Integer, nullable=False, default=0)
    subscription_status = Column(String, nullable=False, default=SubscriptionStatus.NONE.value)
    subscription_id = Column(String, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True)
    max_tries_per_user = Column(Integer, nullable=False, default=5)  # per end customer per day, 0 = no cap
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
