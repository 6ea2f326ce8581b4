"""Idempotency record for subscription lifecycle webhooks."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func
import uuid

from database import Base


class SubscriptionEvent(Base):
    """One row per distinct webhook delivery identity that has been applied."""

    __tablename__ = "subscription_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    event_key = Column(String, nullable=False, unique=True)
    subscription_id = Column(String, nullable=False, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
