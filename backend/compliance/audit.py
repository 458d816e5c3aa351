"""
Audit Logger

Writes one append-only AuditEntry per data-subject action.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

import structlog
from prometheus_client import Counter

from models.gdpr import (
    AuditAction,
    AuditDataType,
    AuditEntry,
    AuditResult,
    RequestContext,
)


logger = structlog.get_logger()


AUDIT_EVENTS = Counter(
    "gdpr_audit_events_total",
    "Audit entries written, by action and result",
    ["action", "result"],
)


def anonymize_ip(ip_address: str) -> str:
    """
    Anonymize an IP address.

    IPv4 keeps its first three octets and IPv6 its first three groups;
    anything else becomes 0.0.0.0.

    Args:
        ip_address: Original IP address

    Returns:
        Anonymized IP address
    """
    parts = ip_address.split(".")
    if len(parts) == 4:
        parts[-1] = "0"
        return ".".join(parts)
    if ":" in ip_address:
        groups = ip_address.split(":")[:3]
        return ":".join(groups) + "::"
    return "0.0.0.0"


def anonymize_user_agent(user_agent: str) -> str:
    """Replace a user agent with a generic value"""
    return "Anonymous"


class AuditLogger:
    """Records data-access events in the audit log repository"""

    def __init__(self, audit_repository, clock: Optional[Callable[[], datetime]] = None):
        self.audit_repo = audit_repository
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def record(
        self,
        context: RequestContext,
        data_type: AuditDataType,
        action: AuditAction,
        result: AuditResult,
        resource_id: Optional[str] = None,
        error: Optional[BaseException] = None,
    ) -> AuditEntry:
        """
        Append an audit entry for the caller in ``context``.

        Args:
            context: Who acted and from where
            data_type: Category of personal data touched
            action: What was done
            result: Outcome of the action
            resource_id: Affected record, if any
            error: Exception behind a failure; only its class name is stored

        Returns:
            The stored AuditEntry
        """
        entry = AuditEntry(
            user_id=context.user_id,
            data_type=data_type,
            action=action,
            resource_id=resource_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            result=result,
            error_type=type(error).__name__ if error is not None else None,
            timestamp=self.clock(),
        )

        await self.audit_repo.create(entry)
        AUDIT_EVENTS.labels(action=action.value, result=result.value).inc()

        logger.info(
            "audit_entry_recorded",
            user_id=context.user_id,
            data_type=data_type.value,
            action=action.value,
            result=result.value,
        )

        return entry

    async def query(
        self,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[AuditEntry], int]:
        """Operator-facing audit query, newest first"""
        return await self.audit_repo.query(
            user_id=user_id,
            action=action.value if action else None,
            limit=limit,
            offset=offset,
        )

    async def history(self, user_id: str, page_size: int = 500) -> List[AuditEntry]:
        """
        Every audit entry of a user, newest first.

        Pages through the log until the reported total is reached.
        """
        entries: List[AuditEntry] = []
        while True:
            page, total = await self.audit_repo.query(
                user_id=user_id, limit=page_size, offset=len(entries)
            )
            entries.extend(page)
            if not page or len(entries) >= total:
                return entries

    async def anonymize_user(self, user_id: str) -> int:
        """
        Strip network provenance from an erased user's audit trail.

        The entries stay as proof of processing; their IP addresses are
        truncated and user agents replaced.

        Returns:
            Number of entries rewritten
        """
        count = await self.audit_repo.anonymize_by_user_id(
            user_id, anonymize_ip, anonymize_user_agent
        )
        logger.info("audit_trail_anonymized", user_id=user_id, entries=count)
        return count
