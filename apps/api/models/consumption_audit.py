"""Audit trail of metered operations, one row per reservation."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from database import Base


class ConsumptionAuditEntry(Base):
    """One reserved consumption and, once reported, its outcome.

    The row is written in the same transaction that takes the credit, with
    ``success`` left NULL. Reporting the outcome fills it in exactly once.
    """

    __tablename__ = "consumption_audit_entries"

    # Reservation id.
    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    customer_id = Column(String, nullable=True, index=True)
    success = Column(Boolean, nullable=True)  # NULL while pending
    latency_ms = Column(Integer, nullable=True)
    error_message = Column(String, nullable=True)
    result_ref = Column(String, nullable=True)
    product_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
