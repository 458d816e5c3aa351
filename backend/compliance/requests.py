"""
Data-Subject Request Managers

- DeletionRequestManager: right to erasure (Article 17) with a fixed grace period
- ExportRequestManager: right of access / portability (Article 15, 20)

Both managers only create and transition request records. The purge is run
by the deletion sweep and the export artifact is produced by an external
worker.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import structlog

from compliance.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from models.gdpr import (
    DeletionRequest,
    DeletionStatus,
    ExportRequest,
    ExportStatus,
)
from repositories.base import DuplicateError


logger = structlog.get_logger()


DELETION_GRACE_PERIOD_DAYS = 30
DELETION_GRACE_PERIOD = timedelta(days=DELETION_GRACE_PERIOD_DAYS)
EXPORT_ESTIMATED_COMPLETION_HOURS = 72
MAX_LIST_LIMIT = 10


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_LIST_LIMIT))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# DELETION REQUESTS
# =============================================================================


class DeletionRequestManager:
    """
    Creates and tracks right-to-erasure requests.

    A user has at most one pending request. ``scheduled_deletion`` is always
    ``request_date + DELETION_GRACE_PERIOD``.
    """

    def __init__(self, deletion_repository, clock: Optional[Callable[[], datetime]] = None):
        self.deletion_repo = deletion_repository
        self.clock = clock or _utcnow

    async def request_deletion(
        self,
        user_id: str,
        reason: Optional[str] = None,
    ) -> DeletionRequest:
        """
        Schedule erasure of a user's data after the grace period.

        Args:
            user_id: User's ID
            reason: Optional free-text reason

        Returns:
            The created pending DeletionRequest

        Raises:
            ConflictError: If the user already has a pending request
        """
        existing = await self.deletion_repo.get_pending_for_user(user_id)
        if existing is not None:
            raise ConflictError(
                f"Deletion request {existing.id} is already pending for this user"
            )

        request_date = self.clock()
        request = DeletionRequest(
            user_id=user_id,
            request_date=request_date,
            scheduled_deletion=request_date + DELETION_GRACE_PERIOD,
            status=DeletionStatus.PENDING,
            reason=reason,
        )

        try:
            await self.deletion_repo.create(request)
        except DuplicateError as e:
            # A concurrent call committed its pending request between our check and insert
            raise ConflictError("A deletion request is already pending for this user", e) from e

        logger.info(
            "deletion_requested",
            user_id=user_id,
            request_id=request.id,
            scheduled_deletion=request.scheduled_deletion.isoformat(),
        )
        return request

    async def list_requests(self, user_id: str, limit: int = MAX_LIST_LIMIT) -> List[DeletionRequest]:
        """A user's deletion requests, most recent first (at most 10)"""
        return await self.deletion_repo.list_by_user_id(user_id, _clamp_limit(limit))

    async def cancel(self, user_id: str, request_id: str) -> DeletionRequest:
        """
        Withdraw a pending request during its grace period.

        Raises:
            NotFoundError: If no such request exists for this user
            InvalidTransitionError: If the request is no longer pending
        """
        request = await self.deletion_repo.get_by_id(request_id)
        if request is None or request.user_id != user_id:
            raise NotFoundError(f"Deletion request not found: {request_id}")

        updated = await self.deletion_repo.transition(
            request_id,
            DeletionStatus.PENDING,
            DeletionStatus.CANCELLED,
            cancelled_at=self.clock(),
        )
        if updated is None:
            raise InvalidTransitionError(
                request_id, request.status.value, DeletionStatus.CANCELLED.value
            )

        logger.info("deletion_cancelled", user_id=user_id, request_id=request_id)
        return updated

    async def due_requests(self, now: Optional[datetime] = None) -> List[DeletionRequest]:
        """Pending requests whose grace period has elapsed"""
        return await self.deletion_repo.get_due(now or self.clock())

    async def mark_completed(self, request_id: str) -> DeletionRequest:
        """
        Record that the purge ran. Only the deletion sweep calls this.

        Raises:
            NotFoundError: If the request does not exist
            InvalidTransitionError: If the request is not pending
        """
        updated = await self.deletion_repo.transition(
            request_id,
            DeletionStatus.PENDING,
            DeletionStatus.COMPLETED,
            completed_at=self.clock(),
        )
        if updated is None:
            current = await self.deletion_repo.get_by_id(request_id)
            if current is None:
                raise NotFoundError(f"Deletion request not found: {request_id}")
            raise InvalidTransitionError(
                request_id, current.status.value, DeletionStatus.COMPLETED.value
            )
        return updated


# =============================================================================
# EXPORT REQUESTS
# =============================================================================


class ExportRequestManager:
    """Creates and tracks data-export requests"""

    def __init__(self, export_repository, clock: Optional[Callable[[], datetime]] = None):
        self.export_repo = export_repository
        self.clock = clock or _utcnow

    async def request_export(self, user_id: str) -> ExportRequest:
        """
        Open a new export request; each call creates an independent record.
        """
        request = ExportRequest(
            user_id=user_id,
            request_date=self.clock(),
            status=ExportStatus.PENDING,
        )
        await self.export_repo.create(request)

        logger.info("export_requested", user_id=user_id, request_id=request.id)
        return request

    async def list_requests(self, user_id: str, limit: int = MAX_LIST_LIMIT) -> List[ExportRequest]:
        """A user's export requests, most recent first (at most 10)"""
        return await self.export_repo.list_by_user_id(user_id, _clamp_limit(limit))

    async def get(self, request_id: str) -> ExportRequest:
        request = await self.export_repo.get_by_id(request_id)
        if request is None:
            raise NotFoundError(f"Export request not found: {request_id}")
        return request

    async def mark_ready(self, request_id: str, download_url: str) -> ExportRequest:
        """
        Worker callback: the artifact is available at ``download_url``.

        Raises:
            ValidationError: If download_url is empty
            NotFoundError: If the request does not exist
            InvalidTransitionError: If the request is not pending
        """
        if not download_url:
            raise ValidationError("download_url is required to mark an export ready")
        return await self._finish(
            request_id, ExportStatus.READY, download_url=download_url
        )

    async def mark_failed(self, request_id: str) -> ExportRequest:
        """Worker callback: the export could not be produced"""
        return await self._finish(request_id, ExportStatus.FAILED)

    async def _finish(self, request_id: str, target: ExportStatus, **fields) -> ExportRequest:
        current = await self.get(request_id)

        updated = await self.export_repo.transition(
            request_id,
            ExportStatus.PENDING,
            target,
            completed_at=self.clock(),
            **fields,
        )
        if updated is None:
            raise InvalidTransitionError(request_id, current.status.value, target.value)

        logger.info(
            "export_finished",
            user_id=updated.user_id,
            request_id=request_id,
            status=target.value,
        )
        return updated
