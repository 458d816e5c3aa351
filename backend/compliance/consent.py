"""
Consent Store

Per-user marketing / analytics / personalization flags (GDPR Article 6, 7)
and the log of every consent decision.
"""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog

from compliance.errors import ValidationError
from models.gdpr import CONSENT_FLAGS, ConsentLogEntry, ConsentRecord
from repositories.base import DuplicateError


logger = structlog.get_logger()


class ConsentStore:
    """Partial-merge consent flags with provenance"""

    def __init__(self, consent_repository, clock: Optional[Callable[[], datetime]] = None):
        self.consent_repo = consent_repository
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def update_consent(
        self,
        user_id: str,
        changes: Dict[str, bool],
        ip_address: str,
        user_agent: str,
    ) -> ConsentRecord:
        """
        Overwrite only the flags present in ``changes``.

        Args:
            user_id: User's ID
            changes: Subset of marketing/analytics/personalization
            ip_address: Client IP for provenance
            user_agent: Client user agent for provenance

        Returns:
            The merged ConsentRecord

        Raises:
            ValidationError: If ``changes`` is empty or names an unknown flag
        """
        if not changes:
            raise ValidationError("Consent update must include at least one flag")
        unknown = set(changes) - set(CONSENT_FLAGS)
        if unknown:
            raise ValidationError(f"Unknown consent flags: {sorted(unknown)}")

        try:
            record = await self.consent_repo.apply_changes(
                user_id, changes, ip_address, user_agent, self.clock()
            )
        except DuplicateError:
            # Lost the race to create the row; it exists now, so merge into it
            logger.info("consent_row_created_concurrently", user_id=user_id)
            record = await self.consent_repo.apply_changes(
                user_id, changes, ip_address, user_agent, self.clock()
            )

        logger.info("consent_updated", user_id=user_id, flags=sorted(changes))
        return record

    async def get_consent_status(self, user_id: str) -> ConsentRecord:
        """Stored consent, or the all-false default if the user never chose"""
        record = await self.consent_repo.get_by_user_id(user_id)
        if record is None:
            return ConsentRecord(user_id=user_id)
        return record

    async def get_consent_history(self, user_id: str) -> List[ConsentLogEntry]:
        """Every logged consent decision, newest first"""
        return await self.consent_repo.get_history(user_id)
