"""Tests for the KYC reviewer workflow."""

from __future__ import annotations

from typing import Any

import pytest

from sachain.models.enums import ActionResult, DocumentStatus, KYCStatus, UserType
from sachain.models.user_profile import CreateKYCDocumentInput, CreateUserProfileInput
from sachain.repositories import AuditLogRepository, KYCDocumentRepository, UserRepository
from sachain.services.kyc_review import EventPublisher, KYCReviewService, ReviewError
from sachain.storage.errors import ErrorCategory, StorageError


class _RecordingPublisher:
    def __init__(self, fail_on: set[str] | None = None) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail_on = fail_on or set()

    async def publish(self, event_type: str, detail: dict[str, Any]) -> None:
        if event_type in self.fail_on:
            raise RuntimeError(f"bus rejected {event_type}")
        self.events.append((event_type, detail))


@pytest.fixture
def service(
    kyc_repo: KYCDocumentRepository, user_repo: UserRepository, audit_repo: AuditLogRepository
) -> KYCReviewService:
    return KYCReviewService(kyc_repo, user_repo, audit_repo)


async def _seed(user_repo: UserRepository, kyc_repo: KYCDocumentRepository, *, with_profile: bool = True) -> str:
    if with_profile:
        await user_repo.create_user_profile(
            CreateUserProfileInput(user_id="u1", email="u1@example.com", user_type=UserType.INVESTOR)
        )
    document = await kyc_repo.create_kyc_document(
        CreateKYCDocumentInput(
            user_id="u1",
            s3_bucket="kyc-docs",
            s3_key="u1/id.jpg",
            file_name="id.jpg",
            file_size=1024,
            content_type="image/jpeg",
        )
    )
    return document.document_id


async def _review_logs(audit_repo: AuditLogRepository):
    return (await audit_repo.get_audit_logs_by_user("admin-1")).items


# -----------------------------------------------------------------------
# Decisions
# -----------------------------------------------------------------------


class TestDecisions:
    async def test_approve_updates_document_and_profile(
        self,
        service: KYCReviewService,
        kyc_repo: KYCDocumentRepository,
        user_repo: UserRepository,
        audit_repo: AuditLogRepository,
    ) -> None:
        document_id = await _seed(user_repo, kyc_repo)
        outcome = await service.approve_document("admin-1", "u1", document_id, "clear scan")

        assert outcome.document.status == DocumentStatus.APPROVED
        assert outcome.document.reviewed_by == "admin-1"
        assert outcome.user_kyc_status == KYCStatus.APPROVED
        profile = await user_repo.get_user_profile("u1")
        assert profile.kyc_status == KYCStatus.APPROVED

        [log] = await _review_logs(audit_repo)
        assert log.action == "kyc_approve"
        assert log.result == ActionResult.SUCCESS
        assert log.details["comments"] == "clear scan"
        assert log.details["file_name"] == "id.jpg"

    async def test_reject(
        self,
        service: KYCReviewService,
        kyc_repo: KYCDocumentRepository,
        user_repo: UserRepository,
    ) -> None:
        document_id = await _seed(user_repo, kyc_repo)
        outcome = await service.reject_document("admin-1", "u1", document_id, "blurry")
        assert outcome.document.status == DocumentStatus.REJECTED
        assert outcome.document.review_comments == "blurry"
        assert (await user_repo.get_user_profile("u1")).kyc_status == KYCStatus.REJECTED

    async def test_missing_document(
        self, service: KYCReviewService, audit_repo: AuditLogRepository
    ) -> None:
        with pytest.raises(ReviewError, match="Document not found"):
            await service.approve_document("admin-1", "u1", "nope")
        [log] = await _review_logs(audit_repo)
        assert log.result == ActionResult.FAILURE
        assert log.error_message == "Document not found"

    async def test_already_reviewed_document_refused(
        self,
        service: KYCReviewService,
        kyc_repo: KYCDocumentRepository,
        user_repo: UserRepository,
        audit_repo: AuditLogRepository,
    ) -> None:
        document_id = await _seed(user_repo, kyc_repo)
        await service.approve_document("admin-1", "u1", document_id)

        with pytest.raises(ReviewError) as exc_info:
            await service.reject_document("admin-1", "u1", document_id)
        assert str(exc_info.value) == "Document is not in pending status"
        assert exc_info.value.current_status == "approved"

        document = await kyc_repo.get_kyc_document("u1", document_id)
        assert document.status == DocumentStatus.APPROVED, "a refused review must not change the document"
        failures = [log for log in await _review_logs(audit_repo) if log.result == ActionResult.FAILURE]
        assert failures[0].error_message == "Document status is approved, not pending"


# -----------------------------------------------------------------------
# Partial failure
# -----------------------------------------------------------------------


class TestInconsistency:
    async def test_profile_update_failure_is_critical(
        self,
        service: KYCReviewService,
        kyc_repo: KYCDocumentRepository,
        user_repo: UserRepository,
        audit_repo: AuditLogRepository,
    ) -> None:
        document_id = await _seed(user_repo, kyc_repo, with_profile=False)

        with pytest.raises(StorageError) as exc_info:
            await service.approve_document("admin-1", "u1", document_id)
        assert exc_info.value.category == ErrorCategory.CONFLICT

        document = await kyc_repo.get_kyc_document("u1", document_id)
        assert document.status == DocumentStatus.APPROVED, "the document write is not rolled back"

        [log] = await _review_logs(audit_repo)
        assert log.result == ActionResult.FAILURE
        assert log.error_message.startswith("CRITICAL: Document approved but user status update failed")
        assert log.details["critical_error"] is True
        assert log.details["step"] == "update_user_status"


# -----------------------------------------------------------------------
# Notifications
# -----------------------------------------------------------------------


class TestPublishing:
    def test_recording_publisher_satisfies_protocol(self) -> None:
        assert isinstance(_RecordingPublisher(), EventPublisher)

    async def test_events_published(
        self,
        kyc_repo: KYCDocumentRepository,
        user_repo: UserRepository,
        audit_repo: AuditLogRepository,
    ) -> None:
        publisher = _RecordingPublisher()
        service = KYCReviewService(kyc_repo, user_repo, audit_repo, publisher)
        document_id = await _seed(user_repo, kyc_repo)

        outcome = await service.approve_document("admin-1", "u1", document_id, "ok")
        assert sorted(outcome.published_events) == ["review_completed", "status_changed"]
        assert outcome.publish_errors == []

        details = dict(publisher.events)
        assert details["status_changed"]["previous_status"] == "pending"
        assert details["status_changed"]["new_status"] == "approved"
        assert details["status_changed"]["user_type"] == "investor"
        assert details["review_completed"]["review_result"] == "approved"

    async def test_publish_failure_does_not_fail_review(
        self,
        kyc_repo: KYCDocumentRepository,
        user_repo: UserRepository,
        audit_repo: AuditLogRepository,
    ) -> None:
        publisher = _RecordingPublisher(fail_on={"status_changed"})
        service = KYCReviewService(kyc_repo, user_repo, audit_repo, publisher)
        document_id = await _seed(user_repo, kyc_repo)

        outcome = await service.reject_document("admin-1", "u1", document_id)
        assert outcome.document.status == DocumentStatus.REJECTED
        assert outcome.published_events == ["review_completed"]
        assert outcome.publish_errors == ["status_changed: bus rejected status_changed"]
