from sachain.models.audit import AuditContext, AuditLogEntry, AuditResult, AuditStats
from sachain.models.compliance import (
    ComplianceEvent,
    ComplianceEventDetails,
    ConsentChangeDetails,
    ConsentRecord,
    CreateComplianceEventInput,
    CreateConsentInput,
    CreateDeletionRequestInput,
    DataAccessDetails,
    DataExportDetails,
    DeletionDetails,
    DeletionRequest,
    DeletionResult,
    RetentionPolicy,
    RetentionResult,
    RetentionSweepDetails,
    UserDataExport,
)
from sachain.models.enums import (
    ActionResult,
    ComplianceEventType,
    ConsentType,
    DataType,
    DeletionReason,
    DeletionStatus,
    DocumentStatus,
    DocumentType,
    KYCStatus,
    LegalBasis,
    UserType,
)
from sachain.models.storage import StoredItem
from sachain.models.user_profile import (
    CreateKYCDocumentInput,
    CreateUserProfileInput,
    KYCDocument,
    KYCDocumentStats,
    UpdateKYCDocumentInput,
    UpdateUserProfileInput,
    UserProfile,
)

__all__ = [
    "ActionResult",
    "AuditContext",
    "AuditLogEntry",
    "AuditResult",
    "AuditStats",
    "ComplianceEvent",
    "ComplianceEventDetails",
    "ComplianceEventType",
    "ConsentChangeDetails",
    "ConsentRecord",
    "ConsentType",
    "CreateComplianceEventInput",
    "CreateConsentInput",
    "CreateDeletionRequestInput",
    "CreateKYCDocumentInput",
    "CreateUserProfileInput",
    "DataAccessDetails",
    "DataExportDetails",
    "DataType",
    "DeletionDetails",
    "DeletionReason",
    "DeletionRequest",
    "DeletionResult",
    "DeletionStatus",
    "DocumentStatus",
    "DocumentType",
    "KYCDocument",
    "KYCDocumentStats",
    "KYCStatus",
    "LegalBasis",
    "RetentionPolicy",
    "RetentionResult",
    "RetentionSweepDetails",
    "StoredItem",
    "UpdateKYCDocumentInput",
    "UpdateUserProfileInput",
    "UserDataExport",
    "UserProfile",
    "UserType",
]
