"""
Compliance Repositories

Data access layer for GDPR compliance data: consent flags, erasure and
export requests, and the audit log.

Repositories flush but never commit. The GDPR service owns the unit of work
so that a domain change and its audit entry commit together.
"""

from datetime import datetime
from uuid import uuid4
from typing import Callable, Optional, List, Dict, Tuple

from sqlalchemy import Boolean, DateTime, Index, String, Text, delete, func, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base
from models.gdpr import (
    CONSENT_LOG_VERSION,
    AuditEntry,
    ConsentLogEntry,
    ConsentRecord,
    DeletionRequest,
    DeletionStatus,
    ExportRequest,
    ExportStatus,
    MAX_IP_ADDRESS_LENGTH,
    MAX_USER_AGENT_LENGTH,
)
from repositories.base import DuplicateError


# =============================================================================
# SQLAlchemy ORM Models
# =============================================================================


class ConsentRecordORM(Base):
    """SQLAlchemy ORM model for current consent flags (one row per user)"""

    __tablename__ = "consent_records"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    marketing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    analytics: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    personalization: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_update_ip: Mapped[Optional[str]] = mapped_column(String(MAX_IP_ADDRESS_LENGTH), nullable=True)
    last_update_user_agent: Mapped[Optional[str]] = mapped_column(String(MAX_USER_AGENT_LENGTH), nullable=True)


class ConsentLogORM(Base):
    """SQLAlchemy ORM model for the append-only consent decision log"""

    __tablename__ = "consent_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    consent_type: Mapped[str] = mapped_column(String(50), nullable=False)
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(MAX_IP_ADDRESS_LENGTH), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(MAX_USER_AGENT_LENGTH), nullable=True)
    version: Mapped[str] = mapped_column(String(10), nullable=False)


class DeletionRequestORM(Base):
    """SQLAlchemy ORM model for right-to-erasure requests"""

    __tablename__ = "deletion_requests"
    __table_args__ = (
        # At most one pending request per user, enforced by the database
        Index(
            "uq_deletion_requests_user_pending",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    request_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_deletion: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), index=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ExportRequestORM(Base):
    """SQLAlchemy ORM model for data-export requests"""

    __tablename__ = "export_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    request_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    download_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLogORM(Base):
    """SQLAlchemy ORM model for the append-only audit log"""

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str] = mapped_column(String(MAX_IP_ADDRESS_LENGTH), nullable=False)
    user_agent: Mapped[str] = mapped_column(String(MAX_USER_AGENT_LENGTH), nullable=False)
    result: Mapped[str] = mapped_column(String(20), nullable=False)
    error_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)


# =============================================================================
# CONSENT REPOSITORY
# =============================================================================


class ConsentRepository:
    """
    Repository for consent flags.

    Each user has a single row; updates merge only the flags supplied and
    append one consent_log entry per flag.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize consent repository.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    async def get_by_user_id(self, user_id: str) -> Optional[ConsentRecord]:
        """
        Get the consent record for a user.

        Args:
            user_id: User's ID

        Returns:
            ConsentRecord if the user ever updated consent, None otherwise
        """
        result = await self.session.execute(
            select(ConsentRecordORM).where(ConsentRecordORM.user_id == user_id)
        )
        orm_record = result.scalar_one_or_none()

        if orm_record:
            return self._to_model(orm_record)
        return None

    async def apply_changes(
        self,
        user_id: str,
        changes: Dict[str, bool],
        ip_address: str,
        user_agent: str,
        timestamp: datetime,
    ) -> ConsentRecord:
        """
        Merge consent flags into the user's record, creating it if needed,
        and log each decision.

        The existing row is locked for the rest of the transaction so that
        concurrent partial updates cannot overwrite each other.

        Args:
            user_id: User's ID
            changes: Flags to overwrite; flags not present keep their value
            ip_address: Client IP for provenance
            user_agent: Client user agent for provenance
            timestamp: Update time

        Returns:
            The merged ConsentRecord

        Raises:
            DuplicateError: If a concurrent first update created the row
        """
        result = await self.session.execute(
            select(ConsentRecordORM)
            .where(ConsentRecordORM.user_id == user_id)
            .with_for_update()
        )
        orm_record = result.scalar_one_or_none()

        if orm_record is None:
            orm_record = ConsentRecordORM(
                user_id=user_id,
                marketing=False,
                analytics=False,
                personalization=False,
            )
            self.session.add(orm_record)

        for flag, value in changes.items():
            setattr(orm_record, flag, value)
            self.session.add(
                ConsentLogORM(
                    id=str(uuid4()),
                    user_id=user_id,
                    consent_type=flag,
                    granted=value,
                    timestamp=timestamp,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    version=CONSENT_LOG_VERSION,
                )
            )
        orm_record.last_updated_at = timestamp
        orm_record.last_update_ip = ip_address
        orm_record.last_update_user_agent = user_agent

        await self._flush()

        return self._to_model(orm_record)

    async def get_history(self, user_id: str) -> List[ConsentLogEntry]:
        """
        Get every consent decision a user made.

        Args:
            user_id: User's ID

        Returns:
            List of ConsentLogEntry ordered by timestamp descending
        """
        result = await self.session.execute(
            select(ConsentLogORM)
            .where(ConsentLogORM.user_id == user_id)
            .order_by(ConsentLogORM.timestamp.desc(), ConsentLogORM.consent_type)
        )
        return [ConsentLogEntry.model_validate(r) for r in result.scalars().all()]

    async def delete_by_user_id(self, user_id: str) -> int:
        """
        Delete the consent record for a user.

        Args:
            user_id: User's ID

        Returns:
            Number of records deleted
        """
        result = await self.session.execute(
            delete(ConsentRecordORM).where(ConsentRecordORM.user_id == user_id)
        )
        return result.rowcount

    async def delete_history_by_user_id(self, user_id: str) -> int:
        """Delete a user's consent log; returns the number of entries deleted"""
        result = await self.session.execute(
            delete(ConsentLogORM).where(ConsentLogORM.user_id == user_id)
        )
        return result.rowcount

    async def _flush(self) -> None:
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateError("Consent record already exists", e) from e

    def _to_model(self, orm_record: ConsentRecordORM) -> ConsentRecord:
        """Convert ORM record to Pydantic model"""
        return ConsentRecord(
            user_id=orm_record.user_id,
            marketing=orm_record.marketing,
            analytics=orm_record.analytics,
            personalization=orm_record.personalization,
            last_updated_at=orm_record.last_updated_at,
            last_update_ip=orm_record.last_update_ip,
            last_update_user_agent=orm_record.last_update_user_agent,
        )


# =============================================================================
# DELETION REQUEST REPOSITORY
# =============================================================================


class DeletionRequestRepository:
    """Repository for right-to-erasure requests"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, request: DeletionRequest) -> DeletionRequest:
        """
        Insert a new deletion request.

        Raises:
            DuplicateError: If the user already has a pending request
                (partial unique index ``uq_deletion_requests_user_pending``)
        """
        orm_record = DeletionRequestORM(
            id=request.id,
            user_id=request.user_id,
            request_date=request.request_date,
            scheduled_deletion=request.scheduled_deletion,
            status=request.status.value,
            reason=request.reason,
            completed_at=request.completed_at,
            cancelled_at=request.cancelled_at,
        )

        self.session.add(orm_record)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateError(
                f"Pending deletion request already exists for user {request.user_id}", e
            ) from e

        return request

    async def get_by_id(self, request_id: str) -> Optional[DeletionRequest]:
        result = await self.session.execute(
            select(DeletionRequestORM)
            .where(DeletionRequestORM.id == request_id)
            .execution_options(populate_existing=True)
        )
        orm_record = result.scalar_one_or_none()

        if orm_record:
            return self._to_model(orm_record)
        return None

    async def get_pending_for_user(self, user_id: str) -> Optional[DeletionRequest]:
        result = await self.session.execute(
            select(DeletionRequestORM).where(
                DeletionRequestORM.user_id == user_id,
                DeletionRequestORM.status == DeletionStatus.PENDING.value,
            )
        )
        orm_record = result.scalars().first()

        if orm_record:
            return self._to_model(orm_record)
        return None

    async def list_by_user_id(self, user_id: str, limit: int) -> List[DeletionRequest]:
        """
        Get a user's deletion requests, most recent first.

        Args:
            user_id: User's ID
            limit: Maximum number of requests

        Returns:
            List of DeletionRequests ordered by request_date descending
        """
        result = await self.session.execute(
            select(DeletionRequestORM)
            .where(DeletionRequestORM.user_id == user_id)
            .order_by(DeletionRequestORM.request_date.desc(), DeletionRequestORM.id.desc())
            .limit(limit)
        )
        return [self._to_model(r) for r in result.scalars().all()]

    async def get_due(self, now: datetime) -> List[DeletionRequest]:
        """Pending requests whose grace period has elapsed, oldest first"""
        result = await self.session.execute(
            select(DeletionRequestORM)
            .where(
                DeletionRequestORM.status == DeletionStatus.PENDING.value,
                DeletionRequestORM.scheduled_deletion <= now,
            )
            .order_by(DeletionRequestORM.scheduled_deletion.asc())
        )
        return [self._to_model(r) for r in result.scalars().all()]

    async def transition(
        self,
        request_id: str,
        from_status: DeletionStatus,
        to_status: DeletionStatus,
        **fields,
    ) -> Optional[DeletionRequest]:
        """
        Atomically move a request between states.

        The UPDATE is conditional on the current status, so of two racing
        transitions exactly one succeeds.

        Returns:
            The updated DeletionRequest, or None if the request was not in
            ``from_status``
        """
        result = await self.session.execute(
            update(DeletionRequestORM)
            .where(
                DeletionRequestORM.id == request_id,
                DeletionRequestORM.status == from_status.value,
            )
            .values(status=to_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get_by_id(request_id)

    def _to_model(self, orm_record: DeletionRequestORM) -> DeletionRequest:
        """Convert ORM record to Pydantic model"""
        return DeletionRequest(
            id=orm_record.id,
            user_id=orm_record.user_id,
            request_date=orm_record.request_date,
            scheduled_deletion=orm_record.scheduled_deletion,
            status=DeletionStatus(orm_record.status),
            reason=orm_record.reason,
            completed_at=orm_record.completed_at,
            cancelled_at=orm_record.cancelled_at,
        )


# =============================================================================
# EXPORT REQUEST REPOSITORY
# =============================================================================


class ExportRequestRepository:
    """Repository for data-export requests"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, request: ExportRequest) -> ExportRequest:
        orm_record = ExportRequestORM(
            id=request.id,
            user_id=request.user_id,
            request_date=request.request_date,
            status=request.status.value,
            download_url=request.download_url,
            completed_at=request.completed_at,
        )

        self.session.add(orm_record)
        await self.session.flush()

        return request

    async def get_by_id(self, request_id: str) -> Optional[ExportRequest]:
        result = await self.session.execute(
            select(ExportRequestORM)
            .where(ExportRequestORM.id == request_id)
            .execution_options(populate_existing=True)
        )
        orm_record = result.scalar_one_or_none()

        if orm_record:
            return self._to_model(orm_record)
        return None

    async def list_by_user_id(self, user_id: str, limit: int) -> List[ExportRequest]:
        """Get a user's export requests ordered by request_date descending"""
        result = await self.session.execute(
            select(ExportRequestORM)
            .where(ExportRequestORM.user_id == user_id)
            .order_by(ExportRequestORM.request_date.desc(), ExportRequestORM.id.desc())
            .limit(limit)
        )
        return [self._to_model(r) for r in result.scalars().all()]

    async def transition(
        self,
        request_id: str,
        from_status: ExportStatus,
        to_status: ExportStatus,
        **fields,
    ) -> Optional[ExportRequest]:
        """Conditional status UPDATE; None if the request was not in ``from_status``"""
        result = await self.session.execute(
            update(ExportRequestORM)
            .where(
                ExportRequestORM.id == request_id,
                ExportRequestORM.status == from_status.value,
            )
            .values(status=to_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get_by_id(request_id)

    async def delete_by_user_id(self, user_id: str) -> int:
        result = await self.session.execute(
            delete(ExportRequestORM).where(ExportRequestORM.user_id == user_id)
        )
        return result.rowcount

    def _to_model(self, orm_record: ExportRequestORM) -> ExportRequest:
        """Convert ORM record to Pydantic model"""
        return ExportRequest(
            id=orm_record.id,
            user_id=orm_record.user_id,
            request_date=orm_record.request_date,
            status=ExportStatus(orm_record.status),
            download_url=orm_record.download_url,
            completed_at=orm_record.completed_at,
        )


# =============================================================================
# AUDIT LOG REPOSITORY
# =============================================================================


class AuditLogRepository:
    """
    Repository for audit log data access.

    Audit entries are append-only; the one rewrite is anonymizing the
    provenance of an erased user.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, entry: AuditEntry) -> AuditEntry:
        orm_record = AuditLogORM(
            id=entry.id,
            user_id=entry.user_id,
            data_type=entry.data_type.value,
            action=entry.action.value,
            resource_id=entry.resource_id,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            result=entry.result.value,
            error_type=entry.error_type,
            timestamp=entry.timestamp,
        )

        self.session.add(orm_record)
        await self.session.flush()

        return entry

    async def query(
        self,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[AuditEntry], int]:
        """
        Filtered audit log page, newest first, with the total match count.
        """
        conditions = []
        if user_id:
            conditions.append(AuditLogORM.user_id == user_id)
        if action:
            conditions.append(AuditLogORM.action == action)

        result = await self.session.execute(
            select(AuditLogORM)
            .where(*conditions)
            .order_by(AuditLogORM.timestamp.desc(), AuditLogORM.id.desc())
            .limit(limit)
            .offset(offset)
        )
        entries = [self._to_model(r) for r in result.scalars().all()]

        total_result = await self.session.execute(
            select(func.count()).select_from(AuditLogORM).where(*conditions)
        )
        total = total_result.scalar_one()

        return entries, total

    async def anonymize_by_user_id(
        self,
        user_id: str,
        anonymize_ip: Callable[[str], str],
        anonymize_user_agent: Callable[[str], str],
    ) -> int:
        """
        Rewrite the provenance columns of a user's entries in place.

        This is the only update the audit log allows; it runs when the
        user's data is erased.

        Returns:
            Number of entries rewritten
        """
        result = await self.session.execute(
            select(AuditLogORM).where(AuditLogORM.user_id == user_id)
        )
        orm_records = result.scalars().all()

        for orm_record in orm_records:
            orm_record.ip_address = anonymize_ip(orm_record.ip_address)
            orm_record.user_agent = anonymize_user_agent(orm_record.user_agent)

        await self.session.flush()
        return len(orm_records)

    def _to_model(self, orm_record: AuditLogORM) -> AuditEntry:
        """Convert ORM record to Pydantic model"""
        return AuditEntry(
            id=orm_record.id,
            user_id=orm_record.user_id,
            data_type=orm_record.data_type,
            action=orm_record.action,
            resource_id=orm_record.resource_id,
            ip_address=orm_record.ip_address,
            user_agent=orm_record.user_agent,
            result=orm_record.result,
            error_type=orm_record.error_type,
            timestamp=orm_record.timestamp,
        )
