"""
GDPR Compliance Service

Implements the data-subject request lifecycle of the travel planner:
- Article 6, 7: Consent flags (marketing, analytics, personalization)
- Article 15, 20: Data export requests
- Article 17: Erasure requests with a 30-day grace period, and the sweep
  that purges data once the grace period has elapsed

Every mutating operation writes exactly one audit entry, whether the
operation succeeded or failed.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

import structlog

from compliance.audit import AuditLogger
from compliance.consent import ConsentStore
from compliance.errors import (
    AuthError,
    ConflictError,
    GDPRError,
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from compliance.repositories import (
    AuditLogRepository,
    ConsentRepository,
    DeletionRequestRepository,
    ExportRequestRepository,
)
from compliance.requests import (
    DELETION_GRACE_PERIOD_DAYS,
    EXPORT_ESTIMATED_COMPLETION_HOURS,
    MAX_LIST_LIMIT,
    DeletionRequestManager,
    ExportRequestManager,
)
from models.gdpr import (
    AuditAction,
    AuditDataType,
    AuditEntry,
    AuditResult,
    ConsentLogEntry,
    ConsentRecord,
    ConsentUpdate,
    DeletionRequest,
    ExportPayload,
    ExportRequest,
    RequestContext,
    SweepResult,
)


logger = structlog.get_logger()

T = TypeVar("T")

GRACE_PERIOD_LABEL = f"{DELETION_GRACE_PERIOD_DAYS} days"
EXPORT_ESTIMATED_COMPLETION = f"{EXPORT_ESTIMATED_COMPLETION_HOURS} hours"

__all__ = [
    "GDPRComplianceService",
    "DeletionSweepService",
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


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _record_failure(
    session,
    audit: AuditLogger,
    context: RequestContext,
    data_type: AuditDataType,
    action: AuditAction,
    error: BaseException,
    resource_id: Optional[str] = None,
) -> None:
    """
    Roll back the failed unit of work, then commit a failure audit entry on
    its own.
    """
    await session.rollback()
    try:
        await audit.record(
            context,
            data_type,
            action,
            AuditResult.FAILURE,
            resource_id=resource_id,
            error=error,
        )
        await session.commit()
    except Exception as audit_error:
        await session.rollback()
        logger.error(
            "audit_write_failed",
            user_id=context.user_id,
            action=action.value,
            original_error=type(error).__name__,
            error=str(audit_error),
        )


# =============================================================================
# GDPR COMPLIANCE SERVICE
# =============================================================================


class GDPRComplianceService:
    """
    Façade over the consent store, the request managers and the audit logger.

    The HTTP layer authenticates the caller and passes a RequestContext; the
    service owns the transaction so each domain change commits together with
    its audit entry.
    """

    def __init__(
        self,
        session,
        consent_store: ConsentStore,
        deletion_manager: DeletionRequestManager,
        export_manager: ExportRequestManager,
        audit_logger: AuditLogger,
    ):
        """
        Initialize GDPR compliance service.

        Args:
            session: SQLAlchemy async session shared by all repositories
            consent_store: Consent flag store
            deletion_manager: Erasure request manager
            export_manager: Export request manager
            audit_logger: Audit trail writer
        """
        self.session = session
        self.consent_store = consent_store
        self.deletion_manager = deletion_manager
        self.export_manager = export_manager
        self.audit = audit_logger

    @classmethod
    def from_session(
        cls,
        session,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "GDPRComplianceService":
        """Wire the service and its collaborators onto one database session"""
        return cls(
            session=session,
            consent_store=ConsentStore(ConsentRepository(session), clock=clock),
            deletion_manager=DeletionRequestManager(DeletionRequestRepository(session), clock=clock),
            export_manager=ExportRequestManager(ExportRequestRepository(session), clock=clock),
            audit_logger=AuditLogger(AuditLogRepository(session), clock=clock),
        )

    async def _audited(
        self,
        context: RequestContext,
        data_type: AuditDataType,
        action: AuditAction,
        operation: Callable[[], Awaitable[T]],
        resource_id: Optional[str] = None,
        resource_id_of: Optional[Callable[[T], str]] = None,
    ) -> T:
        """
        Run ``operation`` and write its audit entry.

        On success the change and a success entry commit together. On any
        failure the change is rolled back, a failure entry is committed, and
        the error propagates; unexpected errors surface as InternalError.
        """
        try:
            result = await operation()
            if resource_id_of is not None:
                resource_id = resource_id_of(result)
            await self.audit.record(
                context, data_type, action, AuditResult.SUCCESS, resource_id=resource_id
            )
            await self.session.commit()
            return result
        except GDPRError as e:
            logger.warning(
                "gdpr_operation_rejected",
                service="gdpr",
                operation=action.value,
                data_type=data_type.value,
                user_id=context.user_id,
                error=e.message,
            )
            await _record_failure(
                self.session, self.audit, context, data_type, action, e, resource_id
            )
            raise
        except Exception as e:
            logger.error(
                "gdpr_operation_failed",
                service="gdpr",
                operation=action.value,
                data_type=data_type.value,
                user_id=context.user_id,
                error=str(e),
            )
            await _record_failure(
                self.session, self.audit, context, data_type, action, e, resource_id
            )
            raise InternalError(f"{data_type.value} {action.value} failed", e) from e

    async def _read(self, operation: str, user_id: Optional[str], call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except GDPRError:
            raise
        except Exception as e:
            logger.error(
                "gdpr_read_failed",
                service="gdpr",
                operation=operation,
                user_id=user_id,
                error=str(e),
            )
            raise InternalError(f"{operation} failed", e) from e

    # -------------------------------------------------------------------------
    # Consent (Article 6, 7)
    # -------------------------------------------------------------------------

    async def update_consent(
        self,
        context: RequestContext,
        update: ConsentUpdate,
    ) -> ConsentRecord:
        """
        Merge the flags present in ``update`` into the user's consent record.

        Args:
            context: Authenticated caller
            update: Validated partial update

        Returns:
            The merged ConsentRecord
        """
        return await self._audited(
            context,
            AuditDataType.CONSENT,
            AuditAction.UPDATE,
            lambda: self.consent_store.update_consent(
                context.user_id,
                update.changes(),
                context.ip_address,
                context.user_agent,
            ),
            resource_id=context.user_id,
        )

    async def get_consent_status(self, context: RequestContext) -> ConsentRecord:
        """Current flags; all False for a user who never chose"""
        return await self._read(
            "get_consent_status",
            context.user_id,
            lambda: self.consent_store.get_consent_status(context.user_id),
        )

    async def get_consent_history(self, context: RequestContext) -> List[ConsentLogEntry]:
        """Every consent decision of the caller, newest first"""
        return await self._read(
            "get_consent_history",
            context.user_id,
            lambda: self.consent_store.get_consent_history(context.user_id),
        )

    # -------------------------------------------------------------------------
    # Erasure (Article 17)
    # -------------------------------------------------------------------------

    async def request_deletion(
        self,
        context: RequestContext,
        reason: Optional[str] = None,
    ) -> DeletionRequest:
        """
        Schedule erasure after the grace period.

        Raises:
            ConflictError: If a request is already pending
        """
        return await self._audited(
            context,
            AuditDataType.USER_PROFILE,
            AuditAction.DELETE,
            lambda: self.deletion_manager.request_deletion(context.user_id, reason),
            resource_id_of=lambda request: request.id,
        )

    async def list_deletion_requests(
        self,
        context: RequestContext,
        limit: int = MAX_LIST_LIMIT,
    ) -> List[DeletionRequest]:
        return await self._read(
            "list_deletion_requests",
            context.user_id,
            lambda: self.deletion_manager.list_requests(context.user_id, limit),
        )

    async def cancel_deletion(
        self,
        context: RequestContext,
        request_id: str,
    ) -> DeletionRequest:
        """
        Withdraw a pending erasure request.

        Raises:
            NotFoundError: If the request does not belong to the caller
            InvalidTransitionError: If it is no longer pending
        """
        return await self._audited(
            context,
            AuditDataType.DELETION_REQUEST,
            AuditAction.CANCEL,
            lambda: self.deletion_manager.cancel(context.user_id, request_id),
            resource_id=request_id,
        )

    # -------------------------------------------------------------------------
    # Export (Article 15, 20)
    # -------------------------------------------------------------------------

    async def request_export(self, context: RequestContext) -> ExportRequest:
        """Open a new pending export request"""
        return await self._audited(
            context,
            AuditDataType.USER_PROFILE,
            AuditAction.EXPORT,
            lambda: self.export_manager.request_export(context.user_id),
            resource_id_of=lambda request: request.id,
        )

    async def list_export_requests(
        self,
        context: RequestContext,
        limit: int = MAX_LIST_LIMIT,
    ) -> List[ExportRequest]:
        return await self._read(
            "list_export_requests",
            context.user_id,
            lambda: self.export_manager.list_requests(context.user_id, limit),
        )

    async def complete_export(self, request_id: str, download_url: str) -> ExportRequest:
        """Worker callback: mark an export ready with its download URL"""
        owner = await self._read(
            "get_export_request", None, lambda: self.export_manager.get(request_id)
        )
        return await self._audited(
            RequestContext.system(owner.user_id),
            AuditDataType.EXPORT_REQUEST,
            AuditAction.UPDATE,
            lambda: self.export_manager.mark_ready(request_id, download_url),
            resource_id=request_id,
        )

    async def fail_export(self, request_id: str) -> ExportRequest:
        """Worker callback: mark an export failed"""
        owner = await self._read(
            "get_export_request", None, lambda: self.export_manager.get(request_id)
        )
        return await self._audited(
            RequestContext.system(owner.user_id),
            AuditDataType.EXPORT_REQUEST,
            AuditAction.UPDATE,
            lambda: self.export_manager.mark_failed(request_id),
            resource_id=request_id,
        )

    async def build_export_payload(self, request_id: str) -> ExportPayload:
        """
        Collect the user's privacy data for the export worker.

        The read of personal data is itself audited.

        Raises:
            NotFoundError: If the export request does not exist
        """
        request = await self._read(
            "get_export_request", None, lambda: self.export_manager.get(request_id)
        )
        user_id = request.user_id

        async def collect() -> ExportPayload:
            consent = await self.consent_store.get_consent_status(user_id)
            consent_history = await self.consent_store.get_consent_history(user_id)
            deletions = await self.deletion_manager.list_requests(user_id)
            exports = await self.export_manager.list_requests(user_id)
            activity = await self.audit.history(user_id)

            return ExportPayload(
                request_id=request_id,
                user_id=user_id,
                export_timestamp=_utcnow(),
                consent=consent.model_dump(mode="json", exclude={"user_id"}),
                consent_history=[
                    c.model_dump(mode="json", exclude={"user_id"}) for c in consent_history
                ],
                deletion_requests=[d.model_dump(mode="json") for d in deletions],
                export_requests=[x.model_dump(mode="json") for x in exports],
                activity_logs=[
                    a.model_dump(mode="json", exclude={"user_id"}) for a in activity
                ],
            )

        return await self._audited(
            RequestContext.system(user_id),
            AuditDataType.USER_PROFILE,
            AuditAction.READ,
            collect,
            resource_id=request_id,
        )

    # -------------------------------------------------------------------------
    # Operator audit query
    # -------------------------------------------------------------------------

    async def query_audit_log(
        self,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[AuditEntry], int]:
        return await self._read(
            "query_audit_log",
            user_id,
            lambda: self.audit.query(user_id=user_id, action=action, limit=limit, offset=offset),
        )


# =============================================================================
# DELETION SWEEP
# =============================================================================


class DeletionSweepService:
    """
    Executes erasure requests whose grace period has elapsed.

    Run periodically by an external scheduler. Each user is purged in its own
    transaction; the audit trail of the erased user is kept with its
    IP addresses and user agents anonymized.
    """

    def __init__(
        self,
        session,
        deletion_manager: DeletionRequestManager,
        consent_repository,
        export_repository,
        audit_logger: AuditLogger,
        user_data_repositories: Optional[Sequence[Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the deletion sweep.

        Args:
            session: SQLAlchemy async session
            deletion_manager: Erasure request manager
            consent_repository: Repository for consent records
            export_repository: Repository for export requests
            audit_logger: Audit trail writer
            user_data_repositories: Extra repositories exposing
                ``delete_by_user_id`` for data owned by other services
            clock: Time source
        """
        self.session = session
        self.deletion_manager = deletion_manager
        self.consent_repo = consent_repository
        self.export_repo = export_repository
        self.audit = audit_logger
        self.user_data_repos = list(user_data_repositories or [])
        self.clock = clock or _utcnow

    @classmethod
    def from_session(
        cls,
        session,
        user_data_repositories: Optional[Sequence[Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "DeletionSweepService":
        return cls(
            session=session,
            deletion_manager=DeletionRequestManager(DeletionRequestRepository(session), clock=clock),
            consent_repository=ConsentRepository(session),
            export_repository=ExportRequestRepository(session),
            audit_logger=AuditLogger(AuditLogRepository(session), clock=clock),
            user_data_repositories=user_data_repositories,
            clock=clock,
        )

    async def process_due_deletions(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Purge every pending request with ``scheduled_deletion <= now``.

        A failure for one user is audited and logged and does not stop the
        sweep for the others.

        Returns:
            Counts of processed, completed and failed requests
        """
        now = now or self.clock()
        due = await self.deletion_manager.due_requests(now)
        summary = SweepResult(processed=len(due))

        logger.info("processing_scheduled_deletions", due=len(due))

        for request in due:
            context = RequestContext.system(request.user_id)
            try:
                categories = await self._purge(request)
                await self.audit.record(
                    context,
                    AuditDataType.USER_PROFILE,
                    AuditAction.DELETE,
                    AuditResult.SUCCESS,
                    resource_id=request.id,
                )
                await self.session.commit()
                summary.completed += 1
                logger.info(
                    "user_data_deleted",
                    user_id=request.user_id,
                    request_id=request.id,
                    categories_deleted=categories,
                )
            except Exception as e:
                logger.error(
                    "scheduled_deletion_failed",
                    service="deletion_sweep",
                    user_id=request.user_id,
                    request_id=request.id,
                    error=str(e),
                )
                await _record_failure(
                    self.session,
                    self.audit,
                    context,
                    AuditDataType.USER_PROFILE,
                    AuditAction.DELETE,
                    e,
                    request.id,
                )
                summary.failed += 1

        logger.info("scheduled_deletions_processed", **summary.model_dump())
        return summary

    async def _purge(self, request: DeletionRequest) -> List[str]:
        # Claim first: a request cancelled since the due query aborts here
        await self.deletion_manager.mark_completed(request.id)

        user_id = request.user_id
        deleted_categories = []

        await self.consent_repo.delete_by_user_id(user_id)
        deleted_categories.append("consents")

        await self.consent_repo.delete_history_by_user_id(user_id)
        deleted_categories.append("consent_history")

        await self.export_repo.delete_by_user_id(user_id)
        deleted_categories.append("export_requests")

        for repo in self.user_data_repos:
            await repo.delete_by_user_id(user_id)
            deleted_categories.append(getattr(repo, "data_category", type(repo).__name__))

        # The audit trail is kept, without the network provenance
        await self.audit.anonymize_user(user_id)

        return deleted_categories

