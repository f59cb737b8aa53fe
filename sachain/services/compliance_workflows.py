"""Data-subject workflows and the scheduled compliance jobs.

Each workflow pairs a lifecycle operation on :class:`ComplianceRepository`
with the compliance event that evidences it.  The two scheduled jobs,
:meth:`ComplianceWorkflows.run_retention_sweep` and
:meth:`ComplianceWorkflows.process_pending_deletions`, always complete their
pass and report what went wrong instead of raising.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from sachain.models.compliance import (
    ConsentChangeDetails,
    ConsentRecord,
    CreateComplianceEventInput,
    CreateDeletionRequestInput,
    DataExportDetails,
    DeletionDetails,
    DeletionRequest,
    RetentionResult,
    RetentionSweepDetails,
    UserDataExport,
)
from sachain.models.enums import (
    ActionResult,
    ComplianceEventType,
    ConsentType,
    DeletionReason,
    DeletionStatus,
    LegalBasis,
)
from sachain.repositories.audit_log import AuditLogRepository
from sachain.repositories.compliance import DEFAULT_CONSENT_VERSION, ComplianceRepository
from sachain.storage.repository import utc_timestamp

logger = structlog.get_logger(__name__)

SYSTEM_USER = "system"


class DeletionRunSummary(BaseModel):
    """Outcome of one pass of the deletion processor."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    request_ids: list[str] = Field(default_factory=list)


class ComplianceWorkflows:
    """Subject-facing compliance operations plus the scheduled jobs.

    Parameters
    ----------
    compliance_repo:
        Lifecycle storage (consent, deletion requests, retention, events).
    audit_repo:
        Audit trail; writes through it never block a workflow.
    deletion_batch_size:
        Maximum pending requests handled per processor pass.
    """

    __slots__ = ("_audit_repo", "_compliance_repo", "_deletion_batch_size")

    def __init__(
        self,
        compliance_repo: ComplianceRepository,
        audit_repo: AuditLogRepository,
        *,
        deletion_batch_size: int = 10,
    ) -> None:
        self._compliance_repo = compliance_repo
        self._audit_repo = audit_repo
        self._deletion_batch_size = deletion_batch_size

    # ------------------------------------------------------------------
    # Subject-facing workflows
    # ------------------------------------------------------------------

    async def record_consent(
        self,
        user_id: str,
        consent_type: ConsentType,
        granted: bool,
        *,
        version: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentRecord:
        """Grant or revoke consent and record the matching compliance event."""
        consent = await self._compliance_repo.update_consent(
            user_id,
            consent_type,
            granted,
            ip_address=ip_address,
            user_agent=user_agent,
            version=version,
        )
        await self._compliance_repo.create_compliance_event(
            CreateComplianceEventInput(
                event_type=ComplianceEventType.CONSENT_GRANTED if granted else ComplianceEventType.CONSENT_REVOKED,
                user_id=user_id,
                details=ConsentChangeDetails(
                    consent_type=consent.consent_type,
                    version=version or DEFAULT_CONSENT_VERSION,
                    granted=granted,
                ),
                ip_address=ip_address,
                user_agent=user_agent,
                legal_basis=LegalBasis.CONSENT,
            )
        )
        await self._audit_repo.try_create_audit_log(
            user_id,
            "consent_granted" if granted else "consent_revoked",
            f"consent:{consent.consent_type}",
            ActionResult.SUCCESS,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return consent

    async def export_for_subject_access(
        self,
        user_id: str,
        *,
        requested_by: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> UserDataExport:
        """Export everything held about *user_id* and evidence the export."""
        snapshot = await self._compliance_repo.export_user_data(user_id)
        await self._compliance_repo.create_compliance_event(
            CreateComplianceEventInput(
                event_type=ComplianceEventType.DATA_EXPORTED,
                user_id=user_id,
                details=DataExportDetails(
                    record_counts=snapshot.record_counts(),
                    requested_by=requested_by or user_id,
                    partial=bool(snapshot.errors),
                ),
                ip_address=ip_address,
                user_agent=user_agent,
                legal_basis=LegalBasis.LEGITIMATE_INTEREST,
            )
        )
        await self._audit_repo.try_create_audit_log(
            requested_by or user_id,
            "data_export",
            f"user:{user_id}",
            ActionResult.FAILURE if snapshot.errors else ActionResult.SUCCESS,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message="; ".join(snapshot.errors) or None,
        )
        return snapshot

    async def request_deletion(
        self,
        user_id: str,
        data_types: list[str],
        *,
        reason: DeletionReason = DeletionReason.USER_REQUEST,
        requested_by: str | None = None,
        scheduled_for: datetime | None = None,
    ) -> DeletionRequest:
        """Queue an erasure request for the deletion processor.

        A request with a timezone-aware *scheduled_for* in the future is left
        alone by :meth:`process_pending_deletions` until that moment.
        """
        request = await self._compliance_repo.create_deletion_request(
            CreateDeletionRequestInput(
                user_id=user_id,
                requested_by=requested_by or user_id,
                reason=reason,
                data_types=data_types,
                scheduled_for=scheduled_for,
            )
        )
        await self._compliance_repo.create_compliance_event(
            CreateComplianceEventInput(
                event_type=ComplianceEventType.DATA_DELETED,
                user_id=user_id,
                details=DeletionDetails(
                    request_id=request.request_id,
                    data_types=list(data_types),
                    reason=str(reason),
                    status=str(DeletionStatus.PENDING),
                ),
                legal_basis=LegalBasis.CONSENT,
            )
        )
        return request

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------

    async def run_retention_sweep(self) -> RetentionResult:
        """Apply all auto-delete retention policies once."""
        logger.info("compliance.retention_sweep_started")
        result = await self._compliance_repo.apply_retention_policies()
        try:
            await self._compliance_repo.create_compliance_event(
                CreateComplianceEventInput(
                    event_type=ComplianceEventType.RETENTION_APPLIED,
                    user_id=SYSTEM_USER,
                    details=RetentionSweepDetails(
                        processed_policies=result.processed_policies,
                        deleted_items=result.deleted_items,
                        error_count=len(result.errors),
                        extra={"errors": result.errors} if result.errors else {},
                    ),
                    legal_basis=LegalBasis.LEGAL_OBLIGATION,
                )
            )
        except Exception as exc:
            logger.error("compliance.retention_event_failed", error=str(exc))
        logger.info(
            "compliance.retention_sweep_completed",
            processed_policies=result.processed_policies,
            deleted_items=result.deleted_items,
            errors=result.errors,
        )
        return result

    async def process_pending_deletions(self, limit: int | None = None) -> DeletionRunSummary:
        """Drive up to *limit* pending requests through the deletion lifecycle.

        ``pending -> processing -> completed`` when erasure reports no errors,
        otherwise ``failed`` with the errors joined by ``"; "``.  Requests
        scheduled for the future are left pending and do not count against
        *limit*.
        """
        summary = DeletionRunSummary()
        due = await self._compliance_repo.get_due_deletion_requests(
            limit or self._deletion_batch_size, now=utc_timestamp()
        )
        for request in due:
            summary.processed += 1
            summary.request_ids.append(request.request_id)
            if await self._process_deletion(request):
                summary.completed += 1
            else:
                summary.failed += 1

        logger.info(
            "compliance.deletion_run_completed",
            processed=summary.processed,
            completed=summary.completed,
            failed=summary.failed,
        )
        return summary

    async def _process_deletion(self, request: DeletionRequest) -> bool:
        repo = self._compliance_repo
        try:
            await repo.update_deletion_request_status(request.user_id, request.request_id, DeletionStatus.PROCESSING)
            outcome = await repo.delete_user_data(request.user_id, request.data_types)
            if outcome.errors:
                await repo.update_deletion_request_status(
                    request.user_id, request.request_id, DeletionStatus.FAILED, "; ".join(outcome.errors)
                )
            else:
                await repo.update_deletion_request_status(
                    request.user_id, request.request_id, DeletionStatus.COMPLETED
                )
            logger.info(
                "compliance.deletion_request_processed",
                request_id=request.request_id,
                user_id=request.user_id,
                deleted_items=outcome.deleted_items,
                errors=outcome.errors,
            )
            return not outcome.errors
        except Exception as exc:
            logger.error(
                "compliance.deletion_request_failed",
                request_id=request.request_id,
                user_id=request.user_id,
                error=str(exc),
            )
            try:
                await repo.update_deletion_request_status(
                    request.user_id, request.request_id, DeletionStatus.FAILED, str(exc)
                )
            except Exception as mark_exc:
                logger.error(
                    "compliance.deletion_request_unmarked",
                    request_id=request.request_id,
                    user_id=request.user_id,
                    error=str(mark_exc),
                )
            return False

