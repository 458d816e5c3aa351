"""
Data Models

Pydantic models for the Travel Planner Privacy API.
"""

from models.gdpr import (
    CONSENT_FLAGS,
    AuditAction,
    AuditDataType,
    AuditEntry,
    AuditLogResponse,
    AuditResult,
    ConsentHistoryResponse,
    ConsentLogEntry,
    ConsentRecord,
    ConsentResponse,
    ConsentStatus,
    ConsentStatusResponse,
    ConsentUpdate,
    DeletionCancelResponse,
    DeletionRequest,
    DeletionRequestCreate,
    DeletionRequestListResponse,
    DeletionRequestResponse,
    DeletionRequestSummary,
    DeletionStatus,
    ExportPayload,
    ExportReadyRequest,
    ExportRequest,
    ExportRequestListResponse,
    ExportRequestResponse,
    ExportRequestSummary,
    ExportStatus,
    RequestContext,
    SweepResult,
)

__all__ = [
    "CONSENT_FLAGS",
    # Enums
    "AuditAction",
    "AuditDataType",
    "AuditResult",
    "DeletionStatus",
    "ExportStatus",
    # Caller context
    "RequestContext",
    # Consent
    "ConsentRecord",
    "ConsentUpdate",
    "ConsentResponse",
    "ConsentStatus",
    "ConsentStatusResponse",
    "ConsentLogEntry",
    "ConsentHistoryResponse",
    # Deletion requests
    "DeletionRequest",
    "DeletionRequestCreate",
    "DeletionRequestResponse",
    "DeletionRequestSummary",
    "DeletionRequestListResponse",
    "DeletionCancelResponse",
    # Export requests
    "ExportRequest",
    "ExportRequestResponse",
    "ExportRequestSummary",
    "ExportRequestListResponse",
    "ExportReadyRequest",
    "ExportPayload",
    # Audit and sweep
    "AuditEntry",
    "AuditLogResponse",
    "SweepResult",
]
