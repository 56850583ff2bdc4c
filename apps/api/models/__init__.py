"""Models package."""

from .product import Product
from .audit_run import AuditRun
from .shadow_spec import ShadowSpec
from .audit_assessment import AuditAssessment
from .audit_stage_run import AuditStageRun
