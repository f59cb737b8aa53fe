"""Tests for audit logging with compliance-event tracking."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from sachain.models.audit import AuditContext
from sachain.models.compliance import DataAccessDetails
from sachain.models.enums import ActionResult, ComplianceEventType, LegalBasis
from sachain.repositories import AuditLogRepository, ComplianceRepository
from sachain.services.audit_enhancer import (
    AuditEnhancer,
    compliance_event_type,
    is_sensitive_action,
    legal_basis_for,
)
from sachain.storage.errors import ErrorClassifier, StoreOperationError
from sachain.storage.repository import utc_timestamp


def _today() -> str:
    return utc_timestamp()[:10]


@pytest.fixture
def enhancer(audit_repo: AuditLogRepository, compliance_repo: ComplianceRepository) -> AuditEnhancer:
    return AuditEnhancer(audit_repo, compliance_repo)


# -----------------------------------------------------------------------
# Classification helpers
# -----------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize(
        "action,expected",
        [
            ("data_export", True),
            ("admin_access", True),
            ("bulk_data_access", True),
            ("kyc_approve", True),
            ("authentication", False),
            ("view_dashboard", False),
        ],
    )
    def test_sensitive_actions(self, action: str, expected: bool) -> None:
        assert is_sensitive_action(action) is expected, f"{action} sensitivity"

    def test_event_type_mapping(self) -> None:
        assert compliance_event_type("data_export") == ComplianceEventType.DATA_EXPORTED
        assert compliance_event_type("consent_revoked") == ComplianceEventType.CONSENT_REVOKED
        assert compliance_event_type("kyc_upload") == ComplianceEventType.DATA_ACCESSED

    @pytest.mark.parametrize(
        "action,basis",
        [
            ("authentication", LegalBasis.CONTRACT),
            ("kyc_upload", LegalBasis.LEGAL_OBLIGATION),
            ("admin_kyc_approve", LegalBasis.LEGAL_OBLIGATION),
            ("data_export", LegalBasis.LEGITIMATE_INTEREST),
            ("data_deletion", LegalBasis.CONSENT),
            ("profile_update", LegalBasis.CONTRACT),
            ("data_access", LegalBasis.LEGITIMATE_INTEREST),
        ],
    )
    def test_legal_basis(self, action: str, basis: LegalBasis) -> None:
        assert legal_basis_for(action) == basis


# -----------------------------------------------------------------------
# log_user_action
# -----------------------------------------------------------------------


class TestLogUserAction:
    async def test_non_sensitive_action_writes_audit_only(
        self, enhancer: AuditEnhancer, compliance_repo: ComplianceRepository
    ) -> None:
        result = await enhancer.log_user_action(
            AuditContext(user_id="u1", action="view_dashboard", resource="dashboard"), "success"
        )
        assert result.success is True
        assert result.audit_log_id is not None
        assert result.compliance_event_id is None
        events = await compliance_repo.get_compliance_events_by_date(_today())
        assert events.count == 0

    async def test_sensitive_action_writes_both(
        self, enhancer: AuditEnhancer, compliance_repo: ComplianceRepository
    ) -> None:
        result = await enhancer.log_user_action(
            AuditContext(user_id="u1", action="data_export", resource="user:u1", request_id="r-1"),
            ActionResult.SUCCESS,
            {"format": "json"},
        )
        assert result.success is True
        assert result.compliance_event_id is not None
        events = await compliance_repo.get_compliance_events_by_date(_today())
        event = events.items[0]
        assert event.event_type == ComplianceEventType.DATA_EXPORTED
        assert event.legal_basis == LegalBasis.LEGITIMATE_INTEREST
        assert isinstance(event.details, DataAccessDetails)
        assert event.details.extra == {"format": "json"}

    async def test_audit_details_carry_session_and_request(
        self, enhancer: AuditEnhancer, audit_repo: AuditLogRepository
    ) -> None:
        await enhancer.log_user_action(
            AuditContext(user_id="u1", action="login", resource="session", session_id="s-1"), "success"
        )
        logs = await audit_repo.get_audit_logs_by_date(_today())
        assert logs.items[0].details == {"session_id": "s-1"}, "None context values are dropped"

    async def test_audit_failure_reported(self, compliance_repo: ComplianceRepository) -> None:
        audit_repo = AsyncMock(spec=AuditLogRepository)
        audit_repo.create_audit_log.side_effect = ErrorClassifier.to_storage_error(
            StoreOperationError("AccessDeniedException", "denied")
        )
        enhancer = AuditEnhancer(audit_repo, compliance_repo)
        result = await enhancer.log_user_action(
            AuditContext(user_id="u1", action="data_export", resource="user:u1"), "success"
        )
        assert result.success is False
        assert result.audit_log_id is None
        assert "denied" in result.error
        assert (await compliance_repo.get_compliance_events_by_date(_today())).count == 0, (
            "no compliance event without an audit record"
        )

    async def test_compliance_failure_still_fails_call(self, audit_repo: AuditLogRepository) -> None:
        compliance_repo = AsyncMock(spec=ComplianceRepository)
        compliance_repo.create_compliance_event.side_effect = RuntimeError("Compliance write failed")
        enhancer = AuditEnhancer(audit_repo, compliance_repo)

        result = await enhancer.log_user_action(
            AuditContext(user_id="u1", action="data_deletion", resource="user:u1"), "success"
        )
        assert result.success is False, "missing compliance evidence must fail the call"
        assert "Compliance write failed" in result.error
        assert result.audit_log_id is not None
        logs = await audit_repo.get_audit_logs_by_date(_today())
        assert [log.log_id for log in logs.items] == [result.audit_log_id], "audit entry is kept"


# -----------------------------------------------------------------------
# Convenience wrappers
# -----------------------------------------------------------------------


class TestWrappers:
    async def test_log_data_access(self, enhancer: AuditEnhancer, audit_repo: AuditLogRepository) -> None:
        result = await enhancer.log_data_access("u1", "kyc_documents", "support ticket")
        assert result.success is True and result.compliance_event_id is not None
        log = (await audit_repo.get_audit_logs_by_date(_today())).items[0]
        assert log.action == "data_access"
        assert log.details["access_reason"] == "support ticket"

    async def test_log_authentication_failure_message(
        self, enhancer: AuditEnhancer, audit_repo: AuditLogRepository
    ) -> None:
        await enhancer.log_authentication("u1", "otp", "failure", details={"error_message": "expired"})
        log = (await audit_repo.get_audit_logs_by_date(_today())).items[0]
        assert log.error_message == "expired"
        assert log.result == ActionResult.FAILURE

    async def test_log_admin_action_prefix(self, enhancer: AuditEnhancer, audit_repo: AuditLogRepository) -> None:
        result = await enhancer.log_admin_action("admin-1", "u1", "access", "user:u1", "success")
        assert result.compliance_event_id is not None, "admin_access is sensitive"
        log = (await audit_repo.get_audit_logs_by_date(_today())).items[0]
        assert log.action == "admin_access"
        assert log.details["target_user_id"] == "u1"

    async def test_bulk_operation_one_result_per_item(
        self, enhancer: AuditEnhancer, audit_repo: AuditLogRepository
    ) -> None:
        results = await enhancer.log_bulk_operation(
            "admin-1",
            "reindex",
            [
                {"resource": "doc:1", "result": "success"},
                {"resource": "doc:2", "result": "failure", "details": {"reason": "locked"}},
            ],
        )
        assert [r.success for r in results] == [True, True]
        logs = (await audit_repo.get_audit_logs_by_date(_today())).items
        assert sorted(log.resource for log in logs) == ["doc:1", "doc:2"]
        assert all(log.action == "bulk_reindex" for log in logs)
