"""Tests for the data-subject workflows and scheduled compliance jobs."""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from sachain.models.compliance import (
    ConsentChangeDetails,
    DataExportDetails,
    DeletionDetails,
    DeletionRequest,
    DeletionResult,
    RetentionResult,
    RetentionSweepDetails,
)
from sachain.models.enums import (
    ComplianceEventType,
    ConsentType,
    DataType,
    DeletionStatus,
    LegalBasis,
    UserType,
)
from sachain.models.user_profile import CreateUserProfileInput
from sachain.repositories import AuditLogRepository, ComplianceRepository, UserRepository
from sachain.services.compliance_workflows import SYSTEM_USER, ComplianceWorkflows
from sachain.storage.repository import utc_now, utc_timestamp


def _today() -> str:
    return utc_timestamp()[:10]


@pytest.fixture
def workflows(compliance_repo: ComplianceRepository, audit_repo: AuditLogRepository) -> ComplianceWorkflows:
    return ComplianceWorkflows(compliance_repo, audit_repo)


async def _events(compliance_repo: ComplianceRepository):
    return (await compliance_repo.get_compliance_events_by_date(_today())).items


class TestRecordConsent:
    async def test_grant_records_event_and_audit(
        self,
        workflows: ComplianceWorkflows,
        compliance_repo: ComplianceRepository,
        audit_repo: AuditLogRepository,
    ) -> None:
        consent = await workflows.record_consent(
            "u1", ConsentType.MARKETING, True, ip_address="10.1.2.3", user_agent="pytest"
        )
        assert consent.granted is True

        [event] = await _events(compliance_repo)
        assert event.event_type == ComplianceEventType.CONSENT_GRANTED
        assert event.legal_basis == LegalBasis.CONSENT
        assert isinstance(event.details, ConsentChangeDetails)
        assert event.details.version == "1.0"
        assert event.ip_address == "10.1.2.3"

        logs = (await audit_repo.get_audit_logs_by_user("u1")).items
        assert [log.action for log in logs] == ["consent_granted"]

    async def test_revoke_emits_revoked_event(
        self, workflows: ComplianceWorkflows, compliance_repo: ComplianceRepository
    ) -> None:
        await workflows.record_consent("u1", ConsentType.ANALYTICS, True)
        revoked = await workflows.record_consent("u1", ConsentType.ANALYTICS, False, version="2.0")
        assert revoked.granted is False
        types = sorted(e.event_type for e in await _events(compliance_repo))
        assert types == [ComplianceEventType.CONSENT_GRANTED, ComplianceEventType.CONSENT_REVOKED]

    async def test_audit_outage_does_not_block_consent(self, compliance_repo: ComplianceRepository) -> None:
        audit_repo = AsyncMock(spec=AuditLogRepository)
        audit_repo.try_create_audit_log.return_value = None
        workflows = ComplianceWorkflows(compliance_repo, audit_repo)
        consent = await workflows.record_consent("u1", ConsentType.MARKETING, True)
        assert consent.granted is True


class TestExport:
    async def test_export_records_counts(
        self,
        workflows: ComplianceWorkflows,
        compliance_repo: ComplianceRepository,
        user_repo: UserRepository,
    ) -> None:
        await user_repo.create_user_profile(
            CreateUserProfileInput(user_id="u1", email="u1@example.com", user_type=UserType.ENTREPRENEUR)
        )
        export = await workflows.export_for_subject_access("u1", requested_by="admin-1")
        assert export.profile is not None

        [event] = await _events(compliance_repo)
        assert event.event_type == ComplianceEventType.DATA_EXPORTED
        assert event.legal_basis == LegalBasis.LEGITIMATE_INTEREST
        assert isinstance(event.details, DataExportDetails)
        assert event.details.record_counts["profile"] == 1
        assert event.details.requested_by == "admin-1"
        assert event.details.partial is False


class TestRequestDeletion:
    async def test_request_is_pending_and_evidenced(
        self, workflows: ComplianceWorkflows, compliance_repo: ComplianceRepository
    ) -> None:
        request = await workflows.request_deletion("u1", [DataType.PROFILE, DataType.CONSENTS])
        assert request.status == DeletionStatus.PENDING
        assert request.requested_by == "u1"
        assert request.reason == "user_request"

        [event] = await _events(compliance_repo)
        assert event.event_type == ComplianceEventType.DATA_DELETED
        assert event.legal_basis == LegalBasis.CONSENT
        assert isinstance(event.details, DeletionDetails)
        assert event.details.request_id == request.request_id
        assert event.details.data_types == ["profile", "consents"]


class TestRetentionSweep:
    async def test_sweep_records_system_event(
        self, workflows: ComplianceWorkflows, compliance_repo: ComplianceRepository
    ) -> None:
        await compliance_repo.create_retention_policy(
            DataType.AUDIT_LOGS, 365, legal_basis="legal_obligation", updated_by="admin", auto_delete_enabled=True
        )
        result = await workflows.run_retention_sweep()
        assert result.processed_policies == 1

        [event] = await _events(compliance_repo)
        assert event.event_type == ComplianceEventType.RETENTION_APPLIED
        assert event.user_id == SYSTEM_USER
        assert event.legal_basis == LegalBasis.LEGAL_OBLIGATION
        assert isinstance(event.details, RetentionSweepDetails)
        assert event.details.processed_policies == 1

    async def test_event_failure_does_not_lose_result(self, audit_repo: AuditLogRepository) -> None:
        compliance_repo = AsyncMock(spec=ComplianceRepository)
        compliance_repo.apply_retention_policies.return_value = RetentionResult(
            processed_policies=2, deleted_items=7, errors=["Error applying policy for x: y"]
        )
        compliance_repo.create_compliance_event.side_effect = RuntimeError("event store down")
        result = await ComplianceWorkflows(compliance_repo, audit_repo).run_retention_sweep()
        assert result.deleted_items == 7
        assert result.errors == ["Error applying policy for x: y"]


class TestDeletionProcessor:
    async def test_pending_request_completed(
        self,
        workflows: ComplianceWorkflows,
        compliance_repo: ComplianceRepository,
        user_repo: UserRepository,
    ) -> None:
        await user_repo.create_user_profile(
            CreateUserProfileInput(user_id="u1", email="u1@example.com", user_type=UserType.ENTREPRENEUR)
        )
        request = await workflows.request_deletion("u1", [DataType.PROFILE])

        summary = await workflows.process_pending_deletions()
        assert (summary.processed, summary.completed, summary.failed) == (1, 1, 0)
        assert summary.request_ids == [request.request_id]

        stored = await compliance_repo.get_deletion_request("u1", request.request_id)
        assert stored.status == DeletionStatus.COMPLETED
        assert stored.completed_at is not None
        assert await user_repo.user_exists("u1") is False

    async def test_erasure_errors_mark_failed(
        self, workflows: ComplianceWorkflows, compliance_repo: ComplianceRepository
    ) -> None:
        request = await workflows.request_deletion("u1", ["profile", "selfies", "videos"])
        summary = await workflows.process_pending_deletions()
        assert summary.failed == 1

        stored = await compliance_repo.get_deletion_request("u1", request.request_id)
        assert stored.status == DeletionStatus.FAILED
        assert stored.failure_reason == "Unsupported data type: selfies; Unsupported data type: videos"

    async def test_future_request_skipped(
        self, workflows: ComplianceWorkflows, compliance_repo: ComplianceRepository
    ) -> None:
        later = utc_now() + timedelta(days=30)
        request = await workflows.request_deletion("u1", [DataType.PROFILE], scheduled_for=later)
        assert request.scheduled_for == utc_timestamp(later)
        summary = await workflows.process_pending_deletions()
        assert summary.processed == 0
        stored = await compliance_repo.get_deletion_request("u1", request.request_id)
        assert stored.status == DeletionStatus.PENDING

    async def test_unexpected_exception_marks_failed(
        self, compliance_repo: ComplianceRepository, audit_repo: AuditLogRepository
    ) -> None:
        workflows = ComplianceWorkflows(compliance_repo, audit_repo)
        request = await workflows.request_deletion("u1", [DataType.PROFILE])
        compliance_repo.delete_user_data = AsyncMock(side_effect=RuntimeError("erasure crashed"))

        summary = await workflows.process_pending_deletions()
        assert summary.failed == 1
        stored = await compliance_repo.get_deletion_request("u1", request.request_id)
        assert stored.status == DeletionStatus.FAILED
        assert stored.failure_reason == "erasure crashed"

    async def test_batch_size_limits_pass(
        self, compliance_repo: ComplianceRepository, audit_repo: AuditLogRepository
    ) -> None:
        workflows = ComplianceWorkflows(compliance_repo, audit_repo, deletion_batch_size=2)
        for i in range(3):
            await workflows.request_deletion(f"u{i}", [DataType.CONSENTS])
        first = await workflows.process_pending_deletions()
        second = await workflows.process_pending_deletions()
        assert first.processed == 2
        assert second.processed == 1

    async def test_mark_failed_error_is_contained(self, audit_repo: AuditLogRepository) -> None:
        compliance_repo = AsyncMock(spec=ComplianceRepository)
        workflows = ComplianceWorkflows(compliance_repo, audit_repo)

        now = utc_timestamp()
        pending = DeletionRequest(
            pk="USER#u1",
            sk="DELETION_REQUEST#r1",
            gsi1pk="DELETION#pending",
            gsi1sk=now,
            request_id="r1",
            user_id="u1",
            requested_at=now,
            requested_by="u1",
            status=DeletionStatus.PENDING,
            reason="user_request",
            data_types=["profile"],
        )
        compliance_repo.get_due_deletion_requests.return_value = [pending]
        compliance_repo.update_deletion_request_status.side_effect = RuntimeError("store down")
        compliance_repo.delete_user_data.return_value = DeletionResult()

        summary = await workflows.process_pending_deletions()
        assert summary.failed == 1, "the pass completes even when the failure cannot be recorded"

    async def test_future_requests_do_not_starve_due_ones(
        self, compliance_repo: ComplianceRepository, audit_repo: AuditLogRepository
    ) -> None:
        workflows = ComplianceWorkflows(compliance_repo, audit_repo, deletion_batch_size=2)
        later = utc_now() + timedelta(days=30)
        for i in range(2):
            await workflows.request_deletion(f"future{i}", [DataType.CONSENTS], scheduled_for=later)
        due = await workflows.request_deletion("u1", [DataType.CONSENTS])

        summary = await workflows.process_pending_deletions()
        assert summary.request_ids == [due.request_id]
        assert summary.completed == 1
        stored = await compliance_repo.get_deletion_request("u1", due.request_id)
        assert stored.status == DeletionStatus.COMPLETED

    async def test_past_schedule_is_processed(
        self, workflows: ComplianceWorkflows, compliance_repo: ComplianceRepository
    ) -> None:
        earlier = utc_now() - timedelta(hours=1)
        request = await workflows.request_deletion("u1", [DataType.CONSENTS], scheduled_for=earlier)
        summary = await workflows.process_pending_deletions()
        assert summary.request_ids == [request.request_id]

    @pytest.mark.parametrize("scheduled_for", ["next tuesday", datetime(2030, 1, 1)])
    async def test_invalid_schedule_rejected(self, workflows: ComplianceWorkflows, scheduled_for) -> None:
        with pytest.raises(ValidationError):
            await workflows.request_deletion("u1", [DataType.PROFILE], scheduled_for=scheduled_for)

    async def test_malformed_stored_schedule_does_not_abort_pass(
        self, backend, workflows: ComplianceWorkflows, compliance_repo: ComplianceRepository
    ) -> None:
        stamp = utc_timestamp(utc_now() - timedelta(minutes=5))
        await backend.put(
            {
                "PK": "USER#legacy",
                "SK": "DELETION_REQUEST#r-legacy",
                "GSI1PK": "DELETION#pending",
                "GSI1SK": stamp,
                "request_id": "r-legacy",
                "user_id": "legacy",
                "requested_at": stamp,
                "requested_by": "legacy",
                "status": "pending",
                "reason": "user_request",
                "data_types": ["profile"],
                "scheduled_for": "next tuesday",
            }
        )
        request = await workflows.request_deletion("u2", [DataType.CONSENTS])

        summary = await workflows.process_pending_deletions()
        assert summary.request_ids == [request.request_id]
        stored = await compliance_repo.get_deletion_request("u2", request.request_id)
        assert stored.status == DeletionStatus.COMPLETED
