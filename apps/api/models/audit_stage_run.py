"""Per-product stage record used by the single-stage endpoints."""

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, UniqueConstraint
import uuid

from database import Base, utcnow


class AuditStageRun(Base):
    """Latest state of one stage for one product."""

    __tablename__ = "audit_stage_runs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    stage = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, running, done, error, blocked
    output_json = Column(JSON, nullable=True)
    error = Column(String, nullable=True)
    meta_json = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("product_id", "stage", name="uq_audit_stage_runs_product_stage"),)
