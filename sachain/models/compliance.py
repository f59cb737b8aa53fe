"""Privacy-compliance records: consent, deletion requests, retention policies
and the append-only compliance event trail.

Consent and deletion requests live in the user's partition
(``USER#<id>``); retention policies share the fixed partition
``POLICY#DATA_RETENTION``; compliance events are partitioned by calendar day
(``COMPLIANCE#<YYYY-MM-DD>``).
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

import orjson
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator

from sachain.models.audit import AuditLogEntry
from sachain.models.enums import (
    ComplianceEventType,
    ConsentType,
    DeletionReason,
    DeletionStatus,
    LegalBasis,
)
from sachain.models.storage import StoredItem
from sachain.models.user_profile import KYCDocument, UserProfile

# ---------------------------------------------------------------------------
# Consent
# ---------------------------------------------------------------------------


class ConsentRecord(StoredItem):
    """One record per (user, consent type), overwritten in place.

    Exactly one of ``granted_at`` / ``revoked_at`` is populated, matching
    ``granted``.
    """

    gsi1pk: str = Field(alias="GSI1PK")  # CONSENT#<type>
    gsi1sk: str = Field(alias="GSI1SK")  # <user>#<timestamp>
    user_id: str
    consent_type: ConsentType
    granted: bool
    granted_at: str | None = None
    revoked_at: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    version: str
    expires_at: str | None = None

    @model_validator(mode="after")
    def _check_timestamps(self) -> ConsentRecord:
        if self.granted and (self.granted_at is None or self.revoked_at is not None):
            raise ValueError("granted consent must have granted_at and no revoked_at")
        if not self.granted and (self.revoked_at is None or self.granted_at is not None):
            raise ValueError("revoked consent must have revoked_at and no granted_at")
        return self


class CreateConsentInput(BaseModel):
    user_id: str = Field(min_length=1)
    consent_type: ConsentType
    granted: bool
    version: str = Field(min_length=1)
    ip_address: str | None = None
    user_agent: str | None = None
    expires_at: str | None = None


# ---------------------------------------------------------------------------
# Deletion requests
# ---------------------------------------------------------------------------


class DeletionRequest(StoredItem):
    """Data-subject erasure request.

    Lifecycle: ``pending -> processing -> completed | failed``.
    ``completed_at`` is only set on ``completed``; ``failure_reason`` only on
    ``failed``.
    """

    gsi1pk: str = Field(alias="GSI1PK")  # DELETION#<status>
    gsi1sk: str = Field(alias="GSI1SK")  # <requested_at>
    request_id: str
    user_id: str
    requested_at: str
    requested_by: str
    status: DeletionStatus
    reason: DeletionReason
    data_types: list[str] = Field(default_factory=list)
    scheduled_for: str | None = None
    completed_at: str | None = None
    failure_reason: str | None = None
    updated_at: str | None = None

    @model_validator(mode="after")
    def _check_outcome_fields(self) -> DeletionRequest:
        if self.completed_at is not None and self.status != DeletionStatus.COMPLETED:
            raise ValueError("completed_at is only set on completed requests")
        if self.failure_reason is not None and self.status != DeletionStatus.FAILED:
            raise ValueError("failure_reason is only set on failed requests")
        return self


class CreateDeletionRequestInput(BaseModel):
    user_id: str = Field(min_length=1)
    requested_by: str = Field(min_length=1)
    reason: DeletionReason
    data_types: list[str] = Field(min_length=1)
    scheduled_for: AwareDatetime | None = None


# ---------------------------------------------------------------------------
# Retention policies
# ---------------------------------------------------------------------------


class RetentionPolicy(StoredItem):
    data_type: str
    retention_period_days: int = Field(ge=0)
    description: str = ""
    legal_basis: str
    auto_delete_enabled: bool = False
    last_updated: str
    updated_by: str


# ---------------------------------------------------------------------------
# Compliance event details (closed, versioned variants)
# ---------------------------------------------------------------------------


class _EventDetails(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int = 1
    extra: dict[str, Any] = Field(default_factory=dict)


class ConsentChangeDetails(_EventDetails):
    kind: Literal["consent_change"] = "consent_change"
    consent_type: ConsentType
    version: str
    granted: bool


class DataAccessDetails(_EventDetails):
    kind: Literal["data_access"] = "data_access"
    action: str
    resource: str
    result: str | None = None


class DataExportDetails(_EventDetails):
    kind: Literal["data_export"] = "data_export"
    record_counts: dict[str, int] = Field(default_factory=dict)
    requested_by: str | None = None
    partial: bool = False


class DeletionDetails(_EventDetails):
    kind: Literal["deletion"] = "deletion"
    request_id: str | None = None
    data_types: list[str] = Field(default_factory=list)
    reason: str | None = None
    status: str | None = None
    deleted_items: int | None = None


class RetentionSweepDetails(_EventDetails):
    kind: Literal["retention_sweep"] = "retention_sweep"
    processed_policies: int = 0
    deleted_items: int = 0
    error_count: int = 0


ComplianceEventDetails = Annotated[
    Union[ConsentChangeDetails, DataAccessDetails, DataExportDetails, DeletionDetails, RetentionSweepDetails],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Compliance events
# ---------------------------------------------------------------------------


class ComplianceEvent(StoredItem):
    """Append-only privacy event; only the retention sweep removes these."""

    event_type: ComplianceEventType
    user_id: str
    timestamp: str
    details: ComplianceEventDetails
    ip_address: str | None = None
    user_agent: str | None = None
    legal_basis: LegalBasis | None = None

    @property
    def event_id(self) -> str:
        return self.sk


class CreateComplianceEventInput(BaseModel):
    event_type: ComplianceEventType
    user_id: str = Field(min_length=1)
    details: ComplianceEventDetails
    ip_address: str | None = None
    user_agent: str | None = None
    legal_basis: LegalBasis | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class RetentionResult(BaseModel):
    processed_policies: int = 0
    deleted_items: int = 0
    errors: list[str] = Field(default_factory=list)


class DeletionResult(BaseModel):
    deleted_items: int = 0
    errors: list[str] = Field(default_factory=list)


class UserDataExport(BaseModel):
    """Subject-access snapshot of everything held about one user.

    Sections whose read failed are left empty and named in ``errors``.
    """

    user_id: str
    exported_at: str
    profile: UserProfile | None = None
    consents: list[ConsentRecord] = Field(default_factory=list)
    kyc_documents: list[KYCDocument] = Field(default_factory=list)
    audit_logs: list[AuditLogEntry] = Field(default_factory=list)
    compliance_events: list[ComplianceEvent] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    def record_counts(self) -> dict[str, int]:
        return {
            "profile": 1 if self.profile is not None else 0,
            "consents": len(self.consents),
            "kyc_documents": len(self.kyc_documents),
            "audit_logs": len(self.audit_logs),
            "compliance_events": len(self.compliance_events),
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.model_dump(mode="json", exclude_none=True))
