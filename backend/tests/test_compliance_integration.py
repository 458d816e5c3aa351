"""
Compliance Integration Tests

Runs the GDPR service, repositories and deletion sweep against an in-memory
SQLite database:
- storage-level uniqueness of pending deletion requests
- list ordering and limits
- partial consent merge
- audit completeness across commits and rollbacks
- consent history log
- sweep purge, retention and anonymization of the audit trail
"""

import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from compliance.errors import ConflictError, InvalidTransitionError, NotFoundError
from compliance.gdpr import DeletionSweepService, GDPRComplianceService
from compliance.repositories import (
    ConsentRepository,
    DeletionRequestRepository,
    ExportRequestRepository,
)
from compliance.requests import DELETION_GRACE_PERIOD
from models.gdpr import (
    AuditAction,
    AuditResult,
    ConsentUpdate,
    DeletionRequest,
    DeletionStatus,
    ExportStatus,
    RequestContext,
)
from repositories.base import DuplicateError


ALICE = RequestContext(user_id="alice", ip_address="198.51.100.4", user_agent="pytest")
BOB = RequestContext(user_id="bob", ip_address="198.51.100.5", user_agent="pytest")


@pytest.fixture
def service(db_session, clock):
    return GDPRComplianceService.from_session(db_session, clock=clock)


@pytest.fixture
def sweep(db_session, clock):
    return DeletionSweepService.from_session(db_session, clock=clock)


# =============================================================================
# CONSENT
# =============================================================================


class TestConsentPersistence:

    @pytest.mark.asyncio
    async def test_unknown_user_gets_defaults(self, service):
        record = await service.get_consent_status(ALICE)

        assert (record.marketing, record.analytics, record.personalization) == (False, False, False)
        assert record.last_updated_at is None

    @pytest.mark.asyncio
    async def test_partial_updates_merge(self, service, clock):
        await service.update_consent(ALICE, ConsentUpdate(marketing=True))
        clock.advance(minutes=5)
        await service.update_consent(ALICE, ConsentUpdate(analytics=True))

        record = await service.get_consent_status(ALICE)

        assert record.marketing is True
        assert record.analytics is True
        assert record.personalization is False
        assert record.last_updated_at == clock.now
        assert record.last_update_ip == "198.51.100.4"

    @pytest.mark.asyncio
    async def test_consent_is_per_user(self, service):
        await service.update_consent(ALICE, ConsentUpdate(personalization=True))

        record = await service.get_consent_status(BOB)

        assert record.personalization is False

    @pytest.mark.asyncio
    async def test_history_logs_every_decision(self, service, clock):
        await service.update_consent(ALICE, ConsentUpdate(marketing=True, analytics=True))
        clock.advance(minutes=5)
        await service.update_consent(ALICE, ConsentUpdate(marketing=False))
        await service.update_consent(BOB, ConsentUpdate(personalization=True))

        history = await service.get_consent_history(ALICE)

        assert [(e.consent_type, e.granted) for e in history] == [
            ("marketing", False),
            ("analytics", True),
            ("marketing", True),
        ]
        assert history[0].timestamp == clock.now
        assert all(e.version == "1.0" for e in history)
        assert all(e.ip_address == "198.51.100.4" for e in history)
        # reads of the history are not audited
        _, total = await service.query_audit_log(user_id="alice")
        assert total == 2


# =============================================================================
# DELETION REQUESTS
# =============================================================================


class TestDeletionPersistence:

    @pytest.mark.asyncio
    async def test_request_schedules_grace_period(self, service, clock):
        request = await service.request_deletion(ALICE, "closing account")

        assert request.request_date == clock.now
        assert request.scheduled_deletion == clock.now + timedelta(days=30)

        stored = await service.list_deletion_requests(ALICE)
        assert [r.id for r in stored] == [request.id]
        assert stored[0].scheduled_deletion == request.scheduled_deletion

    @pytest.mark.asyncio
    async def test_second_request_conflicts(self, service):
        await service.request_deletion(ALICE)

        with pytest.raises(ConflictError):
            await service.request_deletion(ALICE)

        requests = await service.list_deletion_requests(ALICE)
        assert len(requests) == 1
        assert requests[0].status == DeletionStatus.PENDING

    @pytest.mark.asyncio
    async def test_database_rejects_second_pending_row(self, db_session, clock):
        """The partial unique index backs up the pending check"""
        repo = DeletionRequestRepository(db_session)

        def pending():
            return DeletionRequest(
                user_id="alice",
                request_date=clock.now,
                scheduled_deletion=clock.now + DELETION_GRACE_PERIOD,
            )

        await repo.create(pending())
        await db_session.commit()

        with pytest.raises(DuplicateError):
            await repo.create(pending())

    @pytest.mark.asyncio
    async def test_insert_race_is_a_conflict_with_one_failure_entry(self, service):
        """A pending row that slips past the read check is caught by the unique index"""
        await service.request_deletion(ALICE)

        with patch.object(
            service.deletion_manager.deletion_repo,
            "get_pending_for_user",
            AsyncMock(return_value=None),
        ):
            with pytest.raises(ConflictError):
                await service.request_deletion(ALICE)

        entries, total = await service.query_audit_log(user_id="alice", action=AuditAction.DELETE)
        assert total == 2
        failures = [e for e in entries if e.result == AuditResult.FAILURE]
        assert len(failures) == 1
        assert failures[0].error_type == "ConflictError"

        requests = await service.list_deletion_requests(ALICE)
        assert len(requests) == 1
        assert requests[0].status == DeletionStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_then_request_again(self, service, clock):
        first = await service.request_deletion(ALICE)
        cancelled = await service.cancel_deletion(ALICE, first.id)
        assert cancelled.status == DeletionStatus.CANCELLED
        assert cancelled.cancelled_at == clock.now

        clock.advance(days=1)
        second = await service.request_deletion(ALICE)

        assert second.id != first.id
        assert second.status == DeletionStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_twice_is_invalid(self, service):
        request = await service.request_deletion(ALICE)
        await service.cancel_deletion(ALICE, request.id)

        with pytest.raises(InvalidTransitionError):
            await service.cancel_deletion(ALICE, request.id)

    @pytest.mark.asyncio
    async def test_cannot_cancel_another_users_request(self, service):
        request = await service.request_deletion(ALICE)

        with pytest.raises(NotFoundError):
            await service.cancel_deletion(BOB, request.id)

    @pytest.mark.asyncio
    async def test_list_is_newest_first_and_capped(self, service, clock):
        created = []
        for _ in range(12):
            request = await service.request_deletion(ALICE)
            await service.cancel_deletion(ALICE, request.id)
            created.append(request.id)
            clock.advance(hours=1)

        listed = await service.list_deletion_requests(ALICE, limit=10)

        assert len(listed) == 10
        assert [r.id for r in listed] == list(reversed(created))[:10]
        dates = [r.request_date for r in listed]
        assert dates == sorted(dates, reverse=True)


# =============================================================================
# EXPORT REQUESTS
# =============================================================================


class TestExportPersistence:

    @pytest.mark.asyncio
    async def test_export_lifecycle(self, service):
        request = await service.request_export(ALICE)
        assert request.status == ExportStatus.PENDING

        ready = await service.complete_export(request.id, "https://files.example.com/alice.zip")

        assert ready.status == ExportStatus.READY
        assert ready.download_url == "https://files.example.com/alice.zip"
        assert ready.completed_at is not None

        listed = await service.list_export_requests(ALICE)
        assert listed[0].download_url == "https://files.example.com/alice.zip"

    @pytest.mark.asyncio
    async def test_failed_export_has_no_url(self, service):
        request = await service.request_export(ALICE)

        failed = await service.fail_export(request.id)

        assert failed.status == ExportStatus.FAILED
        assert failed.download_url is None

        with pytest.raises(InvalidTransitionError):
            await service.complete_export(request.id, "https://files.example.com/late.zip")

    @pytest.mark.asyncio
    async def test_export_payload(self, service):
        await service.update_consent(ALICE, ConsentUpdate(analytics=True))
        request = await service.request_export(ALICE)

        payload = await service.build_export_payload(request.id)

        assert payload.user_id == "alice"
        assert payload.consent["analytics"] is True
        assert payload.export_requests[0]["id"] == request.id
        assert [c["consent_type"] for c in payload.consent_history] == ["analytics"]
        # consent update and export request, recorded before this read
        assert len(payload.activity_logs) == 2

    @pytest.mark.asyncio
    async def test_activity_history_reads_past_one_page(self, service):
        for _ in range(3):
            await service.update_consent(ALICE, ConsentUpdate(marketing=True))
        await service.request_export(BOB)

        entries = await service.audit.history("alice", page_size=2)

        assert len(entries) == 3
        assert {e.user_id for e in entries} == {"alice"}


# =============================================================================
# AUDIT TRAIL
# =============================================================================


class TestAuditCompleteness:

    @pytest.mark.asyncio
    async def test_success_and_failure_each_audited_once(self, service):
        await service.request_deletion(ALICE)
        with pytest.raises(ConflictError):
            await service.request_deletion(ALICE)

        entries, total = await service.query_audit_log(user_id="alice")

        assert total == 2
        assert all(e.action == AuditAction.DELETE for e in entries)
        assert sorted(e.result.value for e in entries) == ["failure", "success"]
        failure = next(e for e in entries if e.result == AuditResult.FAILURE)
        assert failure.error_type == "ConflictError"
        assert failure.ip_address == "198.51.100.4"

    @pytest.mark.asyncio
    async def test_filter_by_action(self, service):
        await service.update_consent(ALICE, ConsentUpdate(marketing=True))
        await service.request_export(ALICE)
        await service.request_export(BOB)

        entries, total = await service.query_audit_log(action=AuditAction.EXPORT, limit=1)

        assert total == 2
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_long_user_agent_fits_the_log(self, service):
        context = RequestContext(user_id="alice", ip_address="x" * 80, user_agent="U" * 600)

        await service.request_export(context)

        entries, _ = await service.query_audit_log(user_id="alice")
        assert entries[0].user_agent == "U" * 500
        assert entries[0].ip_address == "unknown"


# =============================================================================
# DELETION SWEEP
# =============================================================================


class TestDeletionSweep:

    @pytest.mark.asyncio
    async def test_not_due_within_grace_period(self, service, sweep, clock):
        await service.request_deletion(ALICE)
        clock.advance(days=29)

        result = await sweep.process_due_deletions()

        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_purges_after_grace_period(self, service, sweep, clock, db_session):
        await service.update_consent(ALICE, ConsentUpdate(marketing=True))
        await service.request_export(ALICE)
        await service.update_consent(BOB, ConsentUpdate(marketing=True))
        request = await service.request_deletion(ALICE)

        clock.advance(days=30)
        result = await sweep.process_due_deletions()

        assert result.model_dump() == {"processed": 1, "completed": 1, "failed": 0}

        assert await ConsentRepository(db_session).get_by_user_id("alice") is None
        assert await ExportRequestRepository(db_session).list_by_user_id("alice", 10) == []
        assert await ConsentRepository(db_session).get_by_user_id("bob") is not None

        requests = await service.list_deletion_requests(ALICE)
        assert requests[0].id == request.id
        assert requests[0].status == DeletionStatus.COMPLETED
        assert requests[0].completed_at == clock.now

        entries, _ = await service.query_audit_log(user_id="alice")
        assert len(entries) == 4
        latest = entries[0]
        assert latest.action == AuditAction.DELETE
        assert latest.ip_address == "0.0.0.0"
        assert latest.user_agent == "System"
        # earlier entries survive without the caller's network provenance
        assert {(e.ip_address, e.user_agent) for e in entries[1:]} == {("198.51.100.0", "Anonymous")}

        assert await ConsentRepository(db_session).get_history("alice") == []
        assert len(await ConsentRepository(db_session).get_history("bob")) == 1
        bob_entries, _ = await service.query_audit_log(user_id="bob")
        assert bob_entries[0].ip_address == "198.51.100.5"

    @pytest.mark.asyncio
    async def test_cancelled_request_is_skipped(self, service, sweep, clock):
        request = await service.request_deletion(ALICE)
        await service.cancel_deletion(ALICE, request.id)
        clock.advance(days=31)

        result = await sweep.process_due_deletions()

        assert result.processed == 0
