"""
GDPR Data Models

Pydantic models for consent flags, data-subject requests (erasure and
export), and the append-only audit trail.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    field_validator,
    model_validator,
)


CONSENT_FLAGS = ("marketing", "analytics", "personalization")

# Widths of the provenance columns in the audit and consent tables
MAX_IP_ADDRESS_LENGTH = 45
MAX_USER_AGENT_LENGTH = 500

CONSENT_LOG_VERSION = "1.0"


def _ensure_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)"""
    if v is not None and isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# =============================================================================
# ENUMS
# =============================================================================


class DeletionStatus(str, Enum):
    """Lifecycle of a right-to-erasure request"""
    PENDING = "pending"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ExportStatus(str, Enum):
    """Lifecycle of a data-export request"""
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class AuditAction(str, Enum):
    """Data-access actions recorded in the audit trail"""
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    CANCEL = "cancel"


class AuditDataType(str, Enum):
    """Categories of personal data an audit entry refers to"""
    CONSENT = "consent"
    USER_PROFILE = "user_profile"
    DELETION_REQUEST = "deletion_request"
    EXPORT_REQUEST = "export_request"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# =============================================================================
# REQUEST CONTEXT
# =============================================================================


class RequestContext(BaseModel):
    """
    Authenticated caller context threaded into every orchestrated call.

    Built by the HTTP boundary after session validation; the sweep and the
    export worker use ``RequestContext.system(user_id)``. Header-derived
    values are bounded to the audit log column widths.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    ip_address: str = "unknown"
    user_agent: str = "unknown"

    @field_validator("ip_address", mode="before")
    @classmethod
    def bound_ip_address(cls, v: Optional[str]) -> str:
        """Anything that cannot be an address is recorded as unknown"""
        if not v or len(v) > MAX_IP_ADDRESS_LENGTH:
            return "unknown"
        return v

    @field_validator("user_agent", mode="before")
    @classmethod
    def bound_user_agent(cls, v: Optional[str]) -> str:
        if not v:
            return "unknown"
        return v[:MAX_USER_AGENT_LENGTH]

    @classmethod
    def system(cls, user_id: str) -> "RequestContext":
        return cls(user_id=user_id, ip_address="0.0.0.0", user_agent="System")


# =============================================================================
# CONSENT
# =============================================================================


class ConsentRecord(BaseModel):
    """
    Current consent flags for a user.

    A user with no stored record is reported with every flag False and no
    provenance.
    """

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    marketing: bool = False
    analytics: bool = False
    personalization: bool = False
    last_updated_at: Optional[datetime] = None
    last_update_ip: Optional[str] = None
    last_update_user_agent: Optional[str] = None

    @field_validator("last_updated_at", mode="before")
    @classmethod
    def ensure_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure timestamps have timezone info"""
        return _ensure_utc(v)


class ConsentUpdate(BaseModel):
    """Request schema for a partial consent update"""

    model_config = ConfigDict(extra="forbid")

    marketing: Optional[StrictBool] = None
    analytics: Optional[StrictBool] = None
    personalization: Optional[StrictBool] = None

    @model_validator(mode="after")
    def require_one_flag(self) -> "ConsentUpdate":
        """An update that changes nothing is rejected"""
        if not self.changes():
            raise ValueError(
                "At least one of marketing, analytics, personalization is required"
            )
        return self

    def changes(self) -> Dict[str, bool]:
        """Flags explicitly present in this update"""
        return {
            flag: getattr(self, flag)
            for flag in CONSENT_FLAGS
            if getattr(self, flag) is not None
        }


class ConsentResponse(BaseModel):
    """Response schema after updating consent"""

    success: bool
    message: str


class ConsentStatus(BaseModel):
    marketing: bool
    analytics: bool
    personalization: bool
    last_updated_at: Optional[datetime] = None


class ConsentStatusResponse(BaseModel):
    """Response schema for current consent status"""

    consent: ConsentStatus


class ConsentLogEntry(BaseModel):
    """
    One consent decision for one flag.

    The log is append-only: every update writes one entry per flag it
    carries, so the history shows what the user agreed to and when.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    consent_type: str
    granted: bool
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    version: str = CONSENT_LOG_VERSION

    @field_validator("timestamp", mode="before")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Ensure timestamp has timezone info"""
        return _ensure_utc(v)


class ConsentHistoryResponse(BaseModel):
    """Response schema for consent history"""

    consents: List[ConsentLogEntry]
    total_count: int


# =============================================================================
# DELETION REQUESTS (Article 17)
# =============================================================================


class DeletionRequest(BaseModel):
    """A right-to-erasure request with its grace period"""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    request_date: datetime
    scheduled_deletion: datetime
    status: DeletionStatus = DeletionStatus.PENDING
    reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @field_validator(
        "request_date", "scheduled_deletion", "completed_at", "cancelled_at",
        mode="before",
    )
    @classmethod
    def ensure_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure timestamps have timezone info"""
        return _ensure_utc(v)


class DeletionRequestCreate(BaseModel):
    """
    Request schema for submitting an erasure request.

    Unknown keys are dropped; only an oversized reason is rejected.
    """

    reason: Optional[str] = Field(default=None, max_length=1000)


class DeletionRequestResponse(BaseModel):
    success: bool
    message: str
    request_id: str
    scheduled_deletion: datetime
    grace_period: str


class DeletionRequestSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_date: datetime
    scheduled_deletion: datetime
    status: DeletionStatus
    reason: Optional[str] = None


class DeletionRequestListResponse(BaseModel):
    requests: List[DeletionRequestSummary]


class DeletionCancelResponse(BaseModel):
    success: bool
    message: str
    request_id: str
    status: DeletionStatus


# =============================================================================
# EXPORT REQUESTS (Article 15, 20)
# =============================================================================


class ExportRequest(BaseModel):
    """
    A data-export request.

    ``download_url`` is set exactly when the export is READY.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    request_date: datetime
    status: ExportStatus = ExportStatus.PENDING
    download_url: Optional[str] = None
    completed_at: Optional[datetime] = None

    @field_validator("request_date", "completed_at", mode="before")
    @classmethod
    def ensure_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure timestamps have timezone info"""
        return _ensure_utc(v)

    @model_validator(mode="after")
    def download_url_only_when_ready(self) -> "ExportRequest":
        if (self.status == ExportStatus.READY) != (self.download_url is not None):
            raise ValueError("download_url must be set if and only if status is ready")
        return self


class ExportRequestResponse(BaseModel):
    success: bool
    message: str
    request_id: str
    estimated_completion: str


class ExportRequestSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_date: datetime
    status: ExportStatus
    download_url: Optional[str] = None


class ExportRequestListResponse(BaseModel):
    requests: List[ExportRequestSummary]


class ExportReadyRequest(BaseModel):
    """Worker callback body once the export artifact is stored"""

    download_url: str = Field(..., min_length=1, max_length=2048)

    @field_validator("download_url")
    @classmethod
    def require_http_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("download_url must be an http(s) URL")
        return v


# =============================================================================
# AUDIT TRAIL
# =============================================================================


class AuditEntry(BaseModel):
    """
    Immutable record of one data-access event.

    Required for demonstrating GDPR compliance.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    data_type: AuditDataType
    action: AuditAction
    resource_id: Optional[str] = None
    ip_address: str
    user_agent: str
    result: AuditResult
    error_type: Optional[str] = None
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Ensure timestamp has timezone info"""
        return _ensure_utc(v)


class AuditLogResponse(BaseModel):
    entries: List[AuditEntry]
    total: int


# =============================================================================
# INTERNAL / WORKER
# =============================================================================


class SweepResult(BaseModel):
    """Outcome of one deletion sweep run"""

    processed: int = 0
    completed: int = 0
    failed: int = 0


class ExportPayload(BaseModel):
    """Machine-readable data handed to the export worker"""

    request_id: str
    user_id: str
    export_timestamp: datetime
    export_format_version: str = "1.0"
    consent: Dict[str, Any]
    consent_history: List[Dict[str, Any]]
    deletion_requests: List[Dict[str, Any]]
    export_requests: List[Dict[str, Any]]
    activity_logs: List[Dict[str, Any]]
