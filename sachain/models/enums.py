from __future__ import annotations

from enum import StrEnum


class ConsentType(StrEnum):
    __slots__ = ()

    DATA_PROCESSING = "data_processing"
    MARKETING = "marketing"
    ANALYTICS = "analytics"
    THIRD_PARTY_SHARING = "third_party_sharing"


class DeletionStatus(StrEnum):
    __slots__ = ()

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeletionReason(StrEnum):
    __slots__ = ()

    USER_REQUEST = "user_request"
    ACCOUNT_CLOSURE = "account_closure"
    GDPR_COMPLIANCE = "gdpr_compliance"
    DATA_RETENTION = "data_retention"


class ComplianceEventType(StrEnum):
    __slots__ = ()

    CONSENT_GRANTED = "consent_granted"
    CONSENT_REVOKED = "consent_revoked"
    DATA_ACCESSED = "data_accessed"
    DATA_EXPORTED = "data_exported"
    DATA_DELETED = "data_deleted"
    RETENTION_APPLIED = "retention_applied"


class LegalBasis(StrEnum):
    __slots__ = ()

    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    LEGITIMATE_INTEREST = "legitimate_interest"


class ActionResult(StrEnum):
    __slots__ = ()

    SUCCESS = "success"
    FAILURE = "failure"


class DataType(StrEnum):
    """Data categories understood by erasure and retention."""

    __slots__ = ()

    PROFILE = "profile"
    KYC_DOCUMENTS = "kyc_documents"
    CONSENTS = "consents"
    AUDIT_LOGS = "audit_logs"
    COMPLIANCE_EVENTS = "compliance_events"


class UserType(StrEnum):
    __slots__ = ()

    ENTREPRENEUR = "entrepreneur"
    INVESTOR = "investor"


class KYCStatus(StrEnum):
    __slots__ = ()

    NOT_STARTED = "not_started"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentStatus(StrEnum):
    __slots__ = ()

    UPLOADED = "uploaded"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentType(StrEnum):
    __slots__ = ()

    NATIONAL_ID = "national_id"
