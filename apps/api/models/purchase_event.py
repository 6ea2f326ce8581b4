"""Idempotency record for confirmed plan purchases."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func
import uuid

from database import Base


class PurchaseEvent(Base):
    """One row per billing charge that has been credited."""

    __tablename__ = "purchase_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    charge_id = Column(String, nullable=False, unique=True)
    tenant_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
