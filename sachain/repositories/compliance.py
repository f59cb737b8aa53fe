"""Consent, deletion-request, retention-policy and compliance-event storage.

This repository is the sole writer of consent records, deletion requests and
retention policies.  Its sweep-style operations (:meth:`delete_user_data`,
:meth:`apply_retention_policies`) accumulate failures into the returned
result instead of raising, so a scheduled pass always completes.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Final

import structlog

from sachain.models.audit import AuditLogEntry
from sachain.models.compliance import (
    ComplianceEvent,
    ConsentRecord,
    CreateComplianceEventInput,
    CreateConsentInput,
    CreateDeletionRequestInput,
    DeletionRequest,
    DeletionResult,
    RetentionPolicy,
    RetentionResult,
    UserDataExport,
)
from sachain.models.enums import ConsentType, DataType, DeletionStatus
from sachain.models.user_profile import KYCDocument, UserProfile
from sachain.repositories.audit_log import AUDIT_PK_PREFIX
from sachain.repositories.kyc_document import KYC_SK_PREFIX
from sachain.repositories.user import PROFILE_SK, user_pk
from sachain.storage.errors import StorageError
from sachain.storage.repository import (
    BaseRepository,
    Pagination,
    QueryResult,
    build_update,
    utc_now,
    utc_timestamp,
)

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

CONSENT_SK_PREFIX: Final[str] = "CONSENT#"
DELETION_SK_PREFIX: Final[str] = "DELETION_REQUEST#"
RETENTION_POLICY_PK: Final[str] = "POLICY#DATA_RETENTION"
COMPLIANCE_PK_PREFIX: Final[str] = "COMPLIANCE#"

DEFAULT_CONSENT_VERSION: Final[str] = "1.0"

# Data types the retention sweep can enforce, by partition prefix.
_RETENTION_PREFIXES: Final[dict[str, str]] = {
    DataType.AUDIT_LOGS: AUDIT_PK_PREFIX,
    DataType.COMPLIANCE_EVENTS: COMPLIANCE_PK_PREFIX,
}


def consent_sk(consent_type: ConsentType | str) -> str:
    return f"{CONSENT_SK_PREFIX}{consent_type}"


def deletion_sk(request_id: str) -> str:
    return f"{DELETION_SK_PREFIX}{request_id}"


def deletion_status_pk(status: DeletionStatus | str) -> str:
    return f"DELETION#{status}"


def compliance_pk(day: str) -> str:
    return f"{COMPLIANCE_PK_PREFIX}{day}"


class ComplianceRepository(BaseRepository):
    """Compliance lifecycle manager over the single table."""

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    async def create_consent(self, data: CreateConsentInput) -> ConsentRecord:
        """Write a complete consent record, replacing any existing one."""
        timestamp = utc_timestamp()
        consent = ConsentRecord(
            pk=user_pk(data.user_id),
            sk=consent_sk(data.consent_type),
            gsi1pk=f"{CONSENT_SK_PREFIX}{data.consent_type}",
            gsi1sk=f"{data.user_id}#{timestamp}",
            user_id=data.user_id,
            consent_type=data.consent_type,
            granted=data.granted,
            granted_at=timestamp if data.granted else None,
            revoked_at=None if data.granted else timestamp,
            ip_address=data.ip_address,
            user_agent=data.user_agent,
            version=data.version,
            expires_at=data.expires_at,
        )
        await self.put_item(consent.to_item())
        logger.info(
            "compliance.consent_created",
            user_id=data.user_id,
            consent_type=data.consent_type,
            granted=data.granted,
        )
        return consent

    async def get_consent(self, user_id: str, consent_type: ConsentType | str) -> ConsentRecord | None:
        return await self.get_item(user_pk(user_id), consent_sk(consent_type), model=ConsentRecord)

    async def get_user_consents(self, user_id: str) -> list[ConsentRecord]:
        return await self.query_all_items(
            "#PK = :pk AND begins_with(#SK, :sk_prefix)",
            {"#PK": "PK", "#SK": "SK"},
            {":pk": user_pk(user_id), ":sk_prefix": CONSENT_SK_PREFIX},
            model=ConsentRecord,
        )

    async def get_consents_by_type(
        self, consent_type: ConsentType, pagination: Pagination | None = None
    ) -> QueryResult[ConsentRecord]:
        return await self.query_items(
            "#GSI1PK = :gsi1pk",
            {"#GSI1PK": "GSI1PK"},
            {":gsi1pk": f"{CONSENT_SK_PREFIX}{consent_type}"},
            index_name="GSI1",
            pagination=pagination,
            model=ConsentRecord,
        )

    async def update_consent(
        self,
        user_id: str,
        consent_type: ConsentType,
        granted: bool,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        version: str | None = None,
    ) -> ConsentRecord:
        """Grant or revoke in place.

        Granting keeps an existing ``granted_at`` and drops ``revoked_at``;
        revoking does the inverse.  Repeating the same call leaves the record
        unchanged.  Updating a missing record creates a complete one.
        """
        consent_type = ConsentType(consent_type)
        timestamp = utc_timestamp()
        set_values: dict[str, Any] = {
            "granted": granted,
            "user_id": user_id,
            "consent_type": str(consent_type),
            "GSI1PK": f"{CONSENT_SK_PREFIX}{consent_type}",
            "GSI1SK": f"{user_id}#{timestamp}",
            "version": version or DEFAULT_CONSENT_VERSION,
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        keep = ["user_id", "consent_type", "GSI1PK", "GSI1SK"]
        if version is None:
            keep.append("version")
        if granted:
            set_values["granted_at"] = timestamp
            keep.append("granted_at")
            remove = ["revoked_at"]
        else:
            set_values["revoked_at"] = timestamp
            keep.append("revoked_at")
            remove = ["granted_at"]

        expression, names, values = build_update(set_values, remove, if_not_exists=keep)
        consent = await self.update_item(
            user_pk(user_id), consent_sk(consent_type), expression, names, values, model=ConsentRecord
        )
        logger.info("compliance.consent_updated", user_id=user_id, consent_type=consent_type, granted=granted)
        return consent

    # ------------------------------------------------------------------
    # Deletion requests
    # ------------------------------------------------------------------

    async def create_deletion_request(self, data: CreateDeletionRequestInput) -> DeletionRequest:
        """Register an erasure request; it always starts ``pending``."""
        timestamp = utc_timestamp()
        request_id = str(uuid.uuid4())
        request = DeletionRequest(
            pk=user_pk(data.user_id),
            sk=deletion_sk(request_id),
            gsi1pk=deletion_status_pk(DeletionStatus.PENDING),
            gsi1sk=timestamp,
            request_id=request_id,
            user_id=data.user_id,
            requested_at=timestamp,
            requested_by=data.requested_by,
            status=DeletionStatus.PENDING,
            reason=data.reason,
            data_types=list(data.data_types),
            scheduled_for=utc_timestamp(data.scheduled_for) if data.scheduled_for else None,
        )
        await self.put_item(request.to_item())
        logger.info(
            "compliance.deletion_requested",
            user_id=data.user_id,
            request_id=request_id,
            reason=data.reason,
            data_types=data.data_types,
        )
        return request

    async def get_deletion_request(self, user_id: str, request_id: str) -> DeletionRequest | None:
        return await self.get_item(user_pk(user_id), deletion_sk(request_id), model=DeletionRequest)

    async def get_user_deletion_requests(self, user_id: str) -> list[DeletionRequest]:
        return await self.query_all_items(
            "#PK = :pk AND begins_with(#SK, :sk_prefix)",
            {"#PK": "PK", "#SK": "SK"},
            {":pk": user_pk(user_id), ":sk_prefix": DELETION_SK_PREFIX},
            model=DeletionRequest,
        )

    async def get_deletion_requests_by_status(
        self, status: DeletionStatus, pagination: Pagination | None = None
    ) -> QueryResult[DeletionRequest]:
        """Requests in *status*, oldest first (status index)."""
        return await self.query_items(
            "#GSI1PK = :gsi1pk",
            {"#GSI1PK": "GSI1PK"},
            {":gsi1pk": deletion_status_pk(status)},
            index_name="GSI1",
            pagination=pagination,
            model=DeletionRequest,
        )

    async def get_pending_deletion_requests(
        self, pagination: Pagination | None = None
    ) -> QueryResult[DeletionRequest]:
        return await self.get_deletion_requests_by_status(DeletionStatus.PENDING, pagination)

    async def get_due_deletion_requests(self, limit: int, *, now: str | None = None) -> list[DeletionRequest]:
        """Up to *limit* pending requests, oldest first, whose ``scheduled_for`` is not in the future.

        Future-dated requests are filtered out by the store, and pages are
        followed until *limit* due requests are found or the queue ends.
        """
        return await self.query_all_items(
            "#GSI1PK = :gsi1pk",
            {"#GSI1PK": "GSI1PK", "#scheduled_for": "scheduled_for"},
            {":gsi1pk": deletion_status_pk(DeletionStatus.PENDING), ":now": now or utc_timestamp()},
            index_name="GSI1",
            filter_expression="attribute_not_exists(#scheduled_for) OR #scheduled_for <= :now",
            max_items=limit,
            model=DeletionRequest,
        )

    async def update_deletion_request_status(
        self,
        user_id: str,
        request_id: str,
        status: DeletionStatus,
        failure_reason: str | None = None,
    ) -> DeletionRequest:
        """Move a request to *status*.

        The prior status is not checked; the caller drives the sequence
        ``pending -> processing -> completed | failed``.

        Raises
        ------
        ValueError
            If *status* is ``pending``.
        StorageError
            ``conflict`` if the request does not exist.
        """
        status = DeletionStatus(status)
        if status == DeletionStatus.PENDING:
            raise ValueError("Deletion requests cannot be moved back to pending")

        timestamp = utc_timestamp()
        set_values: dict[str, Any] = {
            "status": str(status),
            "GSI1PK": deletion_status_pk(status),
            "updated_at": timestamp,
        }
        if status == DeletionStatus.COMPLETED:
            set_values["completed_at"] = timestamp
            remove = ["failure_reason"]
        elif status == DeletionStatus.FAILED:
            set_values["failure_reason"] = failure_reason
            remove = ["completed_at"]
        else:
            remove = ["completed_at", "failure_reason"]

        request = await self.update_existing_item(
            user_pk(user_id), deletion_sk(request_id), set_values, remove, model=DeletionRequest
        )
        logger.info(
            "compliance.deletion_status_updated",
            user_id=user_id,
            request_id=request_id,
            status=status,
            failure_reason=failure_reason,
        )
        return request

    # ------------------------------------------------------------------
    # Retention policies
    # ------------------------------------------------------------------

    async def create_retention_policy(
        self,
        data_type: str,
        retention_period_days: int,
        *,
        legal_basis: str,
        updated_by: str,
        description: str = "",
        auto_delete_enabled: bool = False,
    ) -> RetentionPolicy:
        """Create or replace the single policy for *data_type*."""
        policy = RetentionPolicy(
            pk=RETENTION_POLICY_PK,
            sk=data_type,
            data_type=data_type,
            retention_period_days=retention_period_days,
            description=description,
            legal_basis=legal_basis,
            auto_delete_enabled=auto_delete_enabled,
            last_updated=utc_timestamp(),
            updated_by=updated_by,
        )
        await self.put_item(policy.to_item())
        logger.info(
            "compliance.retention_policy_saved",
            data_type=data_type,
            retention_period_days=retention_period_days,
            auto_delete_enabled=auto_delete_enabled,
        )
        return policy

    async def get_retention_policy(self, data_type: str) -> RetentionPolicy | None:
        return await self.get_item(RETENTION_POLICY_PK, data_type, model=RetentionPolicy)

    async def get_all_retention_policies(self) -> list[RetentionPolicy]:
        return await self.query_all_items(
            "#PK = :pk",
            {"#PK": "PK"},
            {":pk": RETENTION_POLICY_PK},
            model=RetentionPolicy,
        )

    async def delete_retention_policy(self, data_type: str) -> None:
        await self.delete_item(RETENTION_POLICY_PK, data_type)

    # ------------------------------------------------------------------
    # Compliance events
    # ------------------------------------------------------------------

    async def create_compliance_event(self, data: CreateComplianceEventInput) -> ComplianceEvent:
        timestamp = utc_timestamp()
        event = ComplianceEvent(
            pk=compliance_pk(timestamp[:10]),
            sk=f"{timestamp}#{data.event_type}#{data.user_id}#{uuid.uuid4().hex[:8]}",
            event_type=data.event_type,
            user_id=data.user_id,
            timestamp=timestamp,
            details=data.details,
            ip_address=data.ip_address,
            user_agent=data.user_agent,
            legal_basis=data.legal_basis,
        )
        await self.put_item(event.to_item())
        logger.info(
            "compliance.event_recorded",
            event_type=data.event_type,
            user_id=data.user_id,
            legal_basis=data.legal_basis,
        )
        return event

    async def get_compliance_events_by_date(
        self, day: str, pagination: Pagination | None = None
    ) -> QueryResult[ComplianceEvent]:
        return await self.query_items(
            "#PK = :pk",
            {"#PK": "PK"},
            {":pk": compliance_pk(day)},
            pagination=pagination,
            model=ComplianceEvent,
        )

    async def get_compliance_events_by_user(
        self, user_id: str, *, max_items: int | None = None
    ) -> list[ComplianceEvent]:
        """Bounded scan of the ``COMPLIANCE#`` partitions for one user."""
        return await self._scan_user_partitions(COMPLIANCE_PK_PREFIX, user_id, max_items, ComplianceEvent)

    # ------------------------------------------------------------------
    # Subject access export
    # ------------------------------------------------------------------

    async def export_user_data(self, user_id: str) -> UserDataExport:
        """Best-effort snapshot of everything held about *user_id*.

        The five reads run concurrently; a failed read leaves its section
        empty and is named in ``errors``.
        """
        sections: dict[str, Awaitable[Any]] = {
            "profile": self.get_item(user_pk(user_id), PROFILE_SK, model=UserProfile),
            "consents": self.get_user_consents(user_id),
            "kyc_documents": self.query_all_items(
                "#PK = :pk AND begins_with(#SK, :sk_prefix)",
                {"#PK": "PK", "#SK": "SK"},
                {":pk": user_pk(user_id), ":sk_prefix": KYC_SK_PREFIX},
                model=KYCDocument,
            ),
            "audit_logs": self._scan_user_partitions(AUDIT_PK_PREFIX, user_id, None, AuditLogEntry),
            "compliance_events": self.get_compliance_events_by_user(user_id),
        }
        results = await asyncio.gather(*sections.values(), return_exceptions=True)

        export: dict[str, Any] = {}
        errors: list[str] = []
        for name, result in zip(sections, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                errors.append(f"Failed to export {name}: {result}")
                logger.warning("compliance.export_section_failed", user_id=user_id, section=name, error=str(result))
                continue
            export[name] = result

        snapshot = UserDataExport(user_id=user_id, exported_at=utc_timestamp(), errors=errors, **export)
        logger.info(
            "compliance.user_data_exported",
            user_id=user_id,
            record_counts=snapshot.record_counts(),
            failed_sections=len(errors),
        )
        return snapshot

    # ------------------------------------------------------------------
    # Erasure
    # ------------------------------------------------------------------

    async def delete_user_data(self, user_id: str, data_types: list[str]) -> DeletionResult:
        """Erase the requested data types for *user_id*.

        Each data type is handled independently; failures and unsupported
        types are reported in ``errors``.  Never raises.
        """
        erasers: dict[str, Callable[[str], Awaitable[int]]] = {
            DataType.PROFILE: self._erase_profile,
            DataType.KYC_DOCUMENTS: self._erase_kyc_documents,
            DataType.CONSENTS: self._erase_consents,
            DataType.AUDIT_LOGS: self._erase_audit_logs,
            DataType.COMPLIANCE_EVENTS: self._erase_compliance_events,
        }
        result = DeletionResult()
        for data_type in data_types:
            eraser = erasers.get(data_type)
            if eraser is None:
                result.errors.append(f"Unsupported data type: {data_type}")
                continue
            try:
                result.deleted_items += await eraser(user_id)
            except Exception as exc:
                result.errors.append(f"Error deleting {data_type}: {exc}")
                logger.warning("compliance.erasure_failed", user_id=user_id, data_type=data_type, error=str(exc))

        logger.info(
            "compliance.user_data_deleted",
            user_id=user_id,
            data_types=data_types,
            deleted_items=result.deleted_items,
            errors=len(result.errors),
        )
        return result

    async def _erase_profile(self, user_id: str) -> int:
        if await self.get_item(user_pk(user_id), PROFILE_SK) is None:
            return 0
        await self.delete_item(user_pk(user_id), PROFILE_SK)
        return 1

    async def _erase_prefix(self, user_id: str, sk_prefix: str) -> int:
        items = await self.query_all_items(
            "#PK = :pk AND begins_with(#SK, :sk_prefix)",
            {"#PK": "PK", "#SK": "SK"},
            {":pk": user_pk(user_id), ":sk_prefix": sk_prefix},
        )
        return await self.batch_delete_items(items)

    async def _erase_kyc_documents(self, user_id: str) -> int:
        return await self._erase_prefix(user_id, KYC_SK_PREFIX)

    async def _erase_consents(self, user_id: str) -> int:
        return await self._erase_prefix(user_id, CONSENT_SK_PREFIX)

    async def _erase_audit_logs(self, user_id: str) -> int:
        items = await self._scan_user_partitions(AUDIT_PK_PREFIX, user_id, self.config.erasure_batch_limit, None)
        return await self.batch_delete_items(items)

    async def _erase_compliance_events(self, user_id: str) -> int:
        items = await self._scan_user_partitions(
            COMPLIANCE_PK_PREFIX, user_id, self.config.erasure_batch_limit, None
        )
        return await self.batch_delete_items(items)

    async def _scan_user_partitions(
        self, pk_prefix: str, user_id: str, max_items: int | None, model: Any
    ) -> list[Any]:
        return await self.scan_all_items(
            "begins_with(#PK, :prefix) AND #user_id = :user_id",
            {"#PK": "PK", "#user_id": "user_id"},
            {":prefix": pk_prefix, ":user_id": user_id},
            max_items=max_items,
            model=model,
        )

    # ------------------------------------------------------------------
    # Retention enforcement
    # ------------------------------------------------------------------

    async def apply_retention_policies(self) -> RetentionResult:
        """Enforce every auto-delete policy once.

        For each policy, one bounded batch of items older than
        ``now - retention_period_days`` is deleted.  A failing policy is
        reported in ``errors`` and the remaining policies still run.
        """
        result = RetentionResult()
        try:
            policies = await self.get_all_retention_policies()
        except StorageError as exc:
            result.errors.append(f"Error loading retention policies: {exc}")
            logger.error("compliance.retention_policies_unavailable", error=str(exc))
            return result

        now = utc_now()
        for policy in policies:
            if not policy.auto_delete_enabled:
                continue
            try:
                cutoff = utc_timestamp(now - timedelta(days=policy.retention_period_days))
                prefix = _RETENTION_PREFIXES.get(policy.data_type)
                if prefix is None:
                    logger.warning("compliance.retention_data_type_unsupported", data_type=policy.data_type)
                else:
                    expired = await self.scan_all_items(
                        "begins_with(#PK, :prefix) AND #timestamp < :cutoff",
                        {"#PK": "PK", "#timestamp": "timestamp"},
                        {":prefix": prefix, ":cutoff": cutoff},
                        max_items=self.config.retention_batch_limit,
                    )
                    result.deleted_items += await self.batch_delete_items(expired)
                result.processed_policies += 1
            except Exception as exc:
                result.errors.append(f"Error applying policy for {policy.data_type}: {exc}")
                logger.warning("compliance.retention_policy_failed", data_type=policy.data_type, error=str(exc))

        logger.info(
            "compliance.retention_applied",
            processed_policies=result.processed_policies,
            deleted_items=result.deleted_items,
            errors=len(result.errors),
        )
        return result
