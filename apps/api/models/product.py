"""Product catalog model (read-only for the audit subsystem)."""

from sqlalchemy import Column, String, DateTime, JSON, Float
from sqlalchemy.sql import func
import uuid

from database import Base


class Product(Base):
    """Audited hardware product owned by the catalog process."""

    __tablename__ = "products"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    slug = Column(String, unique=True, nullable=True, index=True)
    brand = Column(String, nullable=True)
    model_name = Column(String, nullable=True)
    category = Column(String, nullable=True)
    technical_specs = Column(JSON, nullable=True)  # list of {label, value} or nested dict
    weight_lbs = Column(Float, nullable=True)
    msrp_usd = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
