"""
GDPR Compliance Module

Provides the data-subject request lifecycle:
- Consent management (Article 6, 7)
- Right to access/data export (Article 15, 20)
- Right to erasure with a grace period (Article 17)
- Append-only audit trail of every request
"""

from compliance.audit import AuditLogger
from compliance.consent import ConsentStore
from compliance.errors import (
    GDPRError,
    ValidationError,
    AuthError,
    NotFoundError,
    ConflictError,
    InvalidTransitionError,
    InternalError,
)
from compliance.gdpr import (
    GDPRComplianceService,
    DeletionSweepService,
    GRACE_PERIOD_LABEL,
    EXPORT_ESTIMATED_COMPLETION,
)
from compliance.requests import (
    DeletionRequestManager,
    ExportRequestManager,
    DELETION_GRACE_PERIOD,
    DELETION_GRACE_PERIOD_DAYS,
    EXPORT_ESTIMATED_COMPLETION_HOURS,
)

__all__ = [
    "AuditLogger",
    "ConsentStore",
    "DeletionRequestManager",
    "ExportRequestManager",
    "GDPRComplianceService",
    "DeletionSweepService",
    "DELETION_GRACE_PERIOD",
    "DELETION_GRACE_PERIOD_DAYS",
    "EXPORT_ESTIMATED_COMPLETION_HOURS",
    "GRACE_PERIOD_LABEL",
    "EXPORT_ESTIMATED_COMPLETION",
    "GDPRError",
    "ValidationError",
    "AuthError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "InternalError",
]
