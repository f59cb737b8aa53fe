"""Service layer -- audit enrichment, compliance workflows and KYC review."""

from __future__ import annotations

from sachain.services.audit_enhancer import AuditEnhancer
from sachain.services.compliance_workflows import ComplianceWorkflows, DeletionRunSummary
from sachain.services.kyc_review import EventPublisher, KYCReviewService, ReviewError, ReviewOutcome

__all__ = [
    "AuditEnhancer",
    "ComplianceWorkflows",
    "DeletionRunSummary",
    "EventPublisher",
    "KYCReviewService",
    "ReviewError",
    "ReviewOutcome",
]
