"""Audit assessment model: verdict JSON for one completed run."""

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON
from sqlalchemy.sql import func
import uuid

from database import Base


class AuditAssessment(Base):
    """Append-only verdict row keyed by audit run."""

    __tablename__ = "audit_assessments"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    audit_run_id = Column(String, ForeignKey("audit_runs.id"), nullable=False, unique=True, index=True)
    assessment_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
