"""Reviewer decisions on pending KYC documents.

A decision touches two records: the document, then the owner's profile.
The two writes are not transactional; when the second one fails the
document already carries the decision, so the failure is logged and
audited as critical before being re-raised for the caller to reconcile.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, Field

from sachain.models.enums import ActionResult, DocumentStatus, KYCStatus
from sachain.models.user_profile import KYCDocument, UpdateKYCDocumentInput
from sachain.repositories.audit_log import AuditLogRepository
from sachain.repositories.kyc_document import KYCDocumentRepository
from sachain.repositories.user import UserRepository
from sachain.storage.errors import ErrorClassifier

logger = structlog.get_logger(__name__)


@runtime_checkable
class EventPublisher(Protocol):
    """Outbound notification sink (event bus, queue, webhook...)."""

    async def publish(self, event_type: str, detail: dict[str, Any]) -> None: ...


class ReviewError(Exception):
    """The document cannot be reviewed (missing or not pending)."""

    def __init__(self, message: str, *, document_id: str, current_status: str | None = None) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.current_status = current_status


class ReviewOutcome(BaseModel):
    document: KYCDocument
    user_kyc_status: KYCStatus
    published_events: list[str] = Field(default_factory=list)
    publish_errors: list[str] = Field(default_factory=list)


_DECISIONS: dict[str, tuple[DocumentStatus, KYCStatus]] = {
    "approve": (DocumentStatus.APPROVED, KYCStatus.APPROVED),
    "reject": (DocumentStatus.REJECTED, KYCStatus.REJECTED),
}

_PAST_TENSE = {"approve": "approved", "reject": "rejected"}


class KYCReviewService:
    """Approve or reject a pending document on behalf of a reviewer.

    Parameters
    ----------
    kyc_repo, user_repo:
        Document and profile storage.
    audit_repo:
        Every outcome (including refusals) is audited; audit failures are
        logged and never affect the decision.
    publisher:
        Optional sink for ``status_changed`` / ``review_completed``
        notifications.
    """

    __slots__ = ("_audit_repo", "_kyc_repo", "_publisher", "_user_repo")

    def __init__(
        self,
        kyc_repo: KYCDocumentRepository,
        user_repo: UserRepository,
        audit_repo: AuditLogRepository,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._kyc_repo = kyc_repo
        self._user_repo = user_repo
        self._audit_repo = audit_repo
        self._publisher = publisher

    async def approve_document(
        self,
        reviewer_id: str,
        user_id: str,
        document_id: str,
        comments: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ReviewOutcome:
        return await self._review(
            "approve", reviewer_id, user_id, document_id, comments, ip_address=ip_address, user_agent=user_agent
        )

    async def reject_document(
        self,
        reviewer_id: str,
        user_id: str,
        document_id: str,
        comments: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ReviewOutcome:
        return await self._review(
            "reject", reviewer_id, user_id, document_id, comments, ip_address=ip_address, user_agent=user_agent
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _review(
        self,
        decision: str,
        reviewer_id: str,
        user_id: str,
        document_id: str,
        comments: str | None,
        *,
        ip_address: str | None,
        user_agent: str | None,
    ) -> ReviewOutcome:
        started = time.monotonic()
        document_status, kyc_status = _DECISIONS[decision]

        async def audit(result: ActionResult, error_message: str | None = None, **details: Any) -> None:
            try:
                await self._audit_repo.log_kyc_review(
                    reviewer_id,
                    user_id,
                    document_id,
                    decision,
                    result,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    error_message=error_message,
                    details=details,
                )
            except Exception as exc:
                logger.warning("kyc.review_audit_failed", document_id=document_id, decision=decision, error=str(exc))

        document = await self._kyc_repo.get_kyc_document(user_id, document_id)
        if document is None:
            await audit(ActionResult.FAILURE, "Document not found")
            raise ReviewError("Document not found", document_id=document_id)
        if document.status != DocumentStatus.PENDING:
            await audit(
                ActionResult.FAILURE,
                f"Document status is {document.status}, not pending",
                current_status=str(document.status),
            )
            raise ReviewError(
                "Document is not in pending status", document_id=document_id, current_status=str(document.status)
            )

        try:
            updated = await self._kyc_repo.update_kyc_document(
                UpdateKYCDocumentInput(
                    user_id=user_id,
                    document_id=document_id,
                    status=document_status,
                    reviewed_by=reviewer_id,
                    review_comments=comments,
                )
            )
        except Exception as exc:
            details = ErrorClassifier.classify(exc)
            await audit(
                ActionResult.FAILURE,
                f"Failed to {decision} document: {details.technical_message}",
                error_category=str(details.category),
                step=f"{decision}_document",
            )
            raise

        try:
            await self._user_repo.update_kyc_status(user_id, kyc_status)
        except Exception as exc:
            details = ErrorClassifier.classify(exc)
            logger.critical(
                "kyc.critical_inconsistency",
                user_id=user_id,
                document_id=document_id,
                document_status=str(document_status),
                error=details.technical_message,
            )
            await audit(
                ActionResult.FAILURE,
                f"CRITICAL: Document {_PAST_TENSE[decision]} but user status update failed: "
                f"{details.technical_message}",
                error_category=str(details.category),
                step="update_user_status",
                critical_error=True,
            )
            raise

        await audit(
            ActionResult.SUCCESS,
            comments=comments,
            document_type=str(updated.document_type),
            file_name=updated.file_name,
        )

        outcome = ReviewOutcome(document=updated, user_kyc_status=kyc_status)
        if self._publisher is not None:
            await self._publish(outcome, decision, reviewer_id, comments, started)

        logger.info(
            "kyc.review_completed",
            user_id=user_id,
            document_id=document_id,
            decision=decision,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return outcome

    async def _publish(
        self,
        outcome: ReviewOutcome,
        decision: str,
        reviewer_id: str,
        comments: str | None,
        started: float,
    ) -> None:
        document = outcome.document
        user_type = None
        try:
            profile = await self._user_repo.get_user_profile(document.user_id)
            user_type = str(profile.user_type) if profile is not None else None
        except Exception as exc:
            logger.warning("kyc.review_profile_lookup_failed", user_id=document.user_id, error=str(exc))

        events: dict[str, dict[str, Any]] = {
            "status_changed": {
                "user_id": document.user_id,
                "document_id": document.document_id,
                "previous_status": str(DocumentStatus.PENDING),
                "new_status": str(document.status),
                "reviewed_by": reviewer_id,
                "review_comments": comments,
                "document_type": str(document.document_type),
                "user_type": user_type,
            },
            "review_completed": {
                "user_id": document.user_id,
                "document_id": document.document_id,
                "reviewed_by": reviewer_id,
                "review_result": _PAST_TENSE[decision],
                "review_comments": comments,
                "document_type": str(document.document_type),
                "processing_time_ms": round((time.monotonic() - started) * 1000, 2),
            },
        }
        results = await asyncio.gather(
            *(self._publisher.publish(name, detail) for name, detail in events.items()),
            return_exceptions=True,
        )
        for name, result in zip(events, results):
            if isinstance(result, BaseException):
                logger.error(
                    "kyc.review_publish_failed",
                    event_type=name,
                    document_id=document.document_id,
                    error=str(result),
                )
                outcome.publish_errors.append(f"{name}: {result}")
            else:
                outcome.published_events.append(name)
