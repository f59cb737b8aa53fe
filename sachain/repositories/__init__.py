"""Entity repositories over the shared single table."""

from __future__ import annotations

from sachain.repositories.audit_log import AuditLogRepository
from sachain.repositories.compliance import ComplianceRepository
from sachain.repositories.kyc_document import KYCDocumentRepository
from sachain.repositories.user import UserRepository

__all__ = [
    "AuditLogRepository",
    "ComplianceRepository",
    "KYCDocumentRepository",
    "UserRepository",
]
