"""Audit run model: one attempt to audit one product."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON, Index, text
from sqlalchemy.sql import func
import uuid

from database import Base, utcnow


class AuditRun(Base):
    """Run row owned by the worker that claimed it."""

    __tablename__ = "audit_runs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id = Column(String, ForeignKey("products.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    progress = Column(Integer, nullable=False, default=0)
    stage_state = Column(JSON, nullable=False, default=lambda: {"current": None, "stages": {}})
    run_number = Column(Integer, nullable=False, default=1)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_heartbeat = Column(DateTime(timezone=True), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    __table_args__ = (
        # At most one pending/running run per product.
        Index(
            "uq_audit_runs_active_product",
            "product_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
    )
