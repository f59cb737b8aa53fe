"""Append-only audit trail, partitioned by calendar day.

Keys::

    PK = AUDIT#<YYYY-MM-DD>
    SK = <timestamp>#<actor>#<action>#<suffix>

The timestamp prefix keeps entries in chronological order inside a day's
partition; the random suffix keeps two entries for the same actor and action
within one timestamp tick from overwriting each other.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Final

import structlog

from sachain.models.audit import AuditLogEntry, AuditStats
from sachain.models.enums import ActionResult
from sachain.storage.errors import StorageError
from sachain.storage.repository import BaseRepository, Pagination, QueryResult, utc_now, utc_timestamp

logger = structlog.get_logger(__name__)

AUDIT_PK_PREFIX: Final[str] = "AUDIT#"


def audit_pk(day: str) -> str:
    return f"{AUDIT_PK_PREFIX}{day}"


def audit_sk(timestamp: str, actor: str, action: str) -> str:
    return f"{timestamp}#{actor}#{action}#{uuid.uuid4().hex[:8]}"


class AuditLogRepository(BaseRepository):
    """Sole writer of :class:`AuditLogEntry` records."""

    async def create_audit_log(
        self,
        user_id: str,
        action: str,
        resource: str,
        result: ActionResult | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        timestamp = utc_timestamp()
        entry = AuditLogEntry(
            pk=audit_pk(timestamp[:10]),
            sk=audit_sk(timestamp, user_id, action),
            user_id=user_id,
            action=action,
            resource=resource,
            timestamp=timestamp,
            result=ActionResult(result),
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
            details={k: v for k, v in (details or {}).items() if v is not None},
        )
        await self.put_item(entry.to_item())
        logger.debug("audit.log_created", user_id=user_id, action=action, result=entry.result, sk=entry.sk)
        return entry

    async def try_create_audit_log(
        self,
        user_id: str,
        action: str,
        resource: str,
        result: ActionResult | str,
        **kwargs: Any,
    ) -> AuditLogEntry | None:
        """Write an audit entry, logging instead of raising on storage failure.

        For callers whose primary operation must not be blocked by an
        unavailable audit trail.
        """
        try:
            return await self.create_audit_log(user_id, action, resource, result, **kwargs)
        except StorageError as exc:
            logger.warning(
                "audit.log_write_failed",
                user_id=user_id,
                action=action,
                resource=resource,
                category=exc.category,
                error=exc.technical_message,
            )
            return None

    # -- Retrieval -------------------------------------------------------------

    async def get_audit_logs_by_date(
        self, day: str, pagination: Pagination | None = None, *, newest_first: bool = False
    ) -> QueryResult[AuditLogEntry]:
        """Entries for one ``YYYY-MM-DD`` partition, chronologically."""
        return await self.query_items(
            "#PK = :pk",
            {"#PK": "PK"},
            {":pk": audit_pk(day)},
            pagination=pagination,
            model=AuditLogEntry,
            scan_forward=not newest_first,
        )

    async def get_audit_logs_by_date_range(
        self, start_day: str, end_day: str, pagination: Pagination | None = None
    ) -> QueryResult[AuditLogEntry]:
        """Range scan across day partitions (inclusive).

        Without *pagination* one page of at most ``audit_stats_limit`` entries
        is returned; follow ``last_evaluated_key`` for the rest.
        """
        return await self.scan_items(
            "#PK BETWEEN :start_pk AND :end_pk",
            {"#PK": "PK"},
            {":start_pk": audit_pk(start_day), ":end_pk": audit_pk(end_day)},
            pagination=pagination or Pagination(limit=self.config.audit_stats_limit),
            model=AuditLogEntry,
        )

    async def _scan_audit(
        self, attribute: str, value: Any, pagination: Pagination | None
    ) -> QueryResult[AuditLogEntry]:
        return await self.scan_items(
            "begins_with(#PK, :prefix) AND #attr = :value",
            {"#PK": "PK", "#attr": attribute},
            {":prefix": AUDIT_PK_PREFIX, ":value": value},
            pagination=pagination or Pagination(limit=self.config.audit_stats_limit),
            model=AuditLogEntry,
        )

    async def get_audit_logs_by_user(
        self, user_id: str, pagination: Pagination | None = None
    ) -> QueryResult[AuditLogEntry]:
        return await self._scan_audit("user_id", user_id, pagination)

    async def get_audit_logs_by_action(
        self, action: str, pagination: Pagination | None = None
    ) -> QueryResult[AuditLogEntry]:
        return await self._scan_audit("action", action, pagination)

    async def get_audit_logs_by_result(
        self, result: ActionResult, pagination: Pagination | None = None
    ) -> QueryResult[AuditLogEntry]:
        return await self._scan_audit("result", str(result), pagination)

    async def get_failed_audit_logs(self, pagination: Pagination | None = None) -> QueryResult[AuditLogEntry]:
        return await self.get_audit_logs_by_result(ActionResult.FAILURE, pagination)

    async def get_audit_logs_by_resource(
        self, resource: str, pagination: Pagination | None = None
    ) -> QueryResult[AuditLogEntry]:
        return await self._scan_audit("resource", resource, pagination)

    async def get_audit_stats(self, day: str) -> AuditStats:
        """Counts by outcome and by action for one day."""
        logs = await self.get_audit_logs_by_date(day, Pagination(limit=self.config.audit_stats_limit))
        stats = AuditStats(total_logs=logs.count)
        for log in logs.items:
            if log.result == ActionResult.SUCCESS:
                stats.successful_actions += 1
            else:
                stats.failed_actions += 1
            stats.action_breakdown[log.action] = stats.action_breakdown.get(log.action, 0) + 1
        return stats

    async def cleanup_old_logs(self, older_than_days: int) -> int:
        """Delete one bounded batch of entries from partitions before the cutoff day.

        Returns the number of entries deleted; call repeatedly to drain.
        """
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        cutoff_day = utc_timestamp(utc_now() - timedelta(days=older_than_days))[:10]
        old_logs = await self.scan_all_items(
            "begins_with(#PK, :prefix) AND #PK < :cutoff_pk",
            {"#PK": "PK"},
            {":prefix": AUDIT_PK_PREFIX, ":cutoff_pk": audit_pk(cutoff_day)},
            max_items=self.config.retention_batch_limit,
        )
        deleted = await self.batch_delete_items([{"PK": i["PK"], "SK": i["SK"]} for i in old_logs])
        logger.info("audit.cleanup_completed", cutoff_day=cutoff_day, deleted=deleted)
        return deleted

    # -- Convenience writers ---------------------------------------------------

    async def log_authentication(
        self,
        user_id: str,
        result: ActionResult | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        error_message: str | None = None,
    ) -> AuditLogEntry:
        return await self.create_audit_log(
            user_id,
            "authentication",
            "user_session",
            result,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
        )

    async def log_kyc_upload(
        self,
        user_id: str,
        document_id: str,
        result: ActionResult | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        error_message: str | None = None,
    ) -> AuditLogEntry:
        return await self.create_audit_log(
            user_id,
            "kyc_upload",
            f"kyc_document:{document_id}",
            result,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
            details={"document_id": document_id},
        )

    async def log_kyc_review(
        self,
        reviewer_id: str,
        user_id: str,
        document_id: str,
        decision: str,
        result: ActionResult | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        error_message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Audit a reviewer's ``approve``/``reject`` decision on a document."""
        return await self.create_audit_log(
            reviewer_id,
            f"kyc_{decision}",
            f"kyc_document:{document_id}",
            result,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
            details={
                "document_id": document_id,
                "target_user_id": user_id,
                "review_action": decision,
                **(details or {}),
            },
        )

    async def log_profile_update(
        self,
        user_id: str,
        updated_fields: list[str],
        result: ActionResult | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        error_message: str | None = None,
    ) -> AuditLogEntry:
        return await self.create_audit_log(
            user_id,
            "profile_update",
            "user_profile",
            result,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error_message,
            details={"updated_fields": updated_fields},
        )
