"""Audit logging with compliance-event tracking for privacy-sensitive actions.

Every action gets an audit log entry.  Actions that touch personal data
(matched by substring against :data:`SENSITIVE_ACTIONS`) also get a
compliance event carrying an event type and an inferred legal basis.

Failure semantics are deliberately asymmetric:

* audit write fails -> the call fails and reports the error;
* audit write succeeds but the compliance write fails -> the call still
  reports ``success=False`` with the compliance error (and the audit id),
  because compliance evidence is as mandatory as the audit record.
"""

from __future__ import annotations

from typing import Any, Final

import structlog

from sachain.models.audit import AuditContext, AuditResult
from sachain.models.compliance import CreateComplianceEventInput, DataAccessDetails
from sachain.models.enums import ActionResult, ComplianceEventType, LegalBasis
from sachain.repositories.audit_log import AuditLogRepository
from sachain.repositories.compliance import ComplianceRepository

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

SENSITIVE_ACTIONS: Final[tuple[str, ...]] = (
    "data_access",
    "data_export",
    "data_deletion",
    "kyc_upload",
    "kyc_approve",
    "kyc_reject",
    "profile_update",
    "consent_granted",
    "consent_revoked",
    "admin_access",
)

# Exact action name -> event type; anything else is ``data_accessed``.
_EVENT_TYPES: Final[dict[str, ComplianceEventType]] = {
    "data_access": ComplianceEventType.DATA_ACCESSED,
    "data_export": ComplianceEventType.DATA_EXPORTED,
    "data_deletion": ComplianceEventType.DATA_DELETED,
    "consent_granted": ComplianceEventType.CONSENT_GRANTED,
    "consent_revoked": ComplianceEventType.CONSENT_REVOKED,
}

# Ordered; the first key contained in the action name wins.
_LEGAL_BASIS: Final[tuple[tuple[str, LegalBasis], ...]] = (
    ("authentication", LegalBasis.CONTRACT),
    ("kyc_upload", LegalBasis.LEGAL_OBLIGATION),
    ("kyc_approve", LegalBasis.LEGAL_OBLIGATION),
    ("kyc_reject", LegalBasis.LEGAL_OBLIGATION),
    ("data_export", LegalBasis.LEGITIMATE_INTEREST),
    ("data_deletion", LegalBasis.CONSENT),
    ("consent_granted", LegalBasis.CONSENT),
    ("consent_revoked", LegalBasis.CONSENT),
    ("profile_update", LegalBasis.CONTRACT),
)


def is_sensitive_action(action: str) -> bool:
    return any(sensitive in action for sensitive in SENSITIVE_ACTIONS)


def compliance_event_type(action: str) -> ComplianceEventType:
    return _EVENT_TYPES.get(action, ComplianceEventType.DATA_ACCESSED)


def legal_basis_for(action: str) -> LegalBasis:
    for key, basis in _LEGAL_BASIS:
        if key in action:
            return basis
    return LegalBasis.LEGITIMATE_INTEREST


class AuditEnhancer:
    """Composes an audit write and (when required) a compliance write."""

    __slots__ = ("_audit_repo", "_compliance_repo")

    def __init__(self, audit_repo: AuditLogRepository, compliance_repo: ComplianceRepository) -> None:
        self._audit_repo = audit_repo
        self._compliance_repo = compliance_repo

    async def log_user_action(
        self,
        context: AuditContext,
        result: ActionResult | str,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> AuditResult:
        """Record *context* in the audit trail and, if sensitive, as a compliance event.

        Never raises; failures are reported through :class:`AuditResult`.
        """
        result = ActionResult(result)
        try:
            entry = await self._audit_repo.create_audit_log(
                context.user_id,
                context.action,
                context.resource,
                result,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                error_message=error_message,
                details={
                    **(details or {}),
                    "session_id": context.session_id,
                    "request_id": context.request_id,
                },
            )
        except Exception as exc:
            logger.error(
                "audit.enhanced_log_failed",
                stage="audit_log",
                user_id=context.user_id,
                action=context.action,
                error=str(exc),
            )
            return AuditResult(success=False, error=str(exc))

        if not is_sensitive_action(context.action):
            logger.info(
                "audit.enhanced_log_created",
                user_id=context.user_id,
                action=context.action,
                result=result,
                audit_log_id=entry.log_id,
            )
            return AuditResult(success=True, audit_log_id=entry.log_id)

        try:
            event = await self._compliance_repo.create_compliance_event(
                CreateComplianceEventInput(
                    event_type=compliance_event_type(context.action),
                    user_id=context.user_id,
                    details=DataAccessDetails(
                        action=context.action,
                        resource=context.resource,
                        result=str(result),
                        extra=dict(details or {}),
                    ),
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    legal_basis=legal_basis_for(context.action),
                )
            )
        except Exception as exc:
            logger.error(
                "audit.enhanced_log_failed",
                stage="compliance_event",
                user_id=context.user_id,
                action=context.action,
                audit_log_id=entry.log_id,
                error=str(exc),
            )
            return AuditResult(success=False, audit_log_id=entry.log_id, error=str(exc))

        logger.info(
            "audit.enhanced_log_created",
            user_id=context.user_id,
            action=context.action,
            result=result,
            audit_log_id=entry.log_id,
            compliance_event_id=event.event_id,
        )
        return AuditResult(success=True, audit_log_id=entry.log_id, compliance_event_id=event.event_id)

    # -- Convenience wrappers --------------------------------------------------

    async def log_data_access(
        self,
        user_id: str,
        data_type: str,
        access_reason: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditResult:
        return await self.log_user_action(
            AuditContext(
                user_id=user_id,
                action="data_access",
                resource=data_type,
                ip_address=ip_address,
                user_agent=user_agent,
            ),
            ActionResult.SUCCESS,
            {"data_type": data_type, "access_reason": access_reason, **(details or {})},
        )

    async def log_authentication(
        self,
        user_id: str,
        auth_method: str,
        result: ActionResult | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditResult:
        details = details or {}
        return await self.log_user_action(
            AuditContext(
                user_id=user_id,
                action="authentication",
                resource="user_session",
                ip_address=ip_address,
                user_agent=user_agent,
            ),
            result,
            {"auth_method": auth_method, **details},
            details.get("error_message") if ActionResult(result) == ActionResult.FAILURE else None,
        )

    async def log_admin_action(
        self,
        admin_user_id: str,
        target_user_id: str,
        action: str,
        resource: str,
        result: ActionResult | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditResult:
        return await self.log_user_action(
            AuditContext(
                user_id=admin_user_id,
                action=f"admin_{action}",
                resource=resource,
                ip_address=ip_address,
                user_agent=user_agent,
            ),
            result,
            {"target_user_id": target_user_id, "admin_action": action, **(details or {})},
        )

    async def log_bulk_operation(
        self,
        user_id: str,
        operation: str,
        items: list[dict[str, Any]],
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> list[AuditResult]:
        """One audited action per item (``resource``, ``result``, optional ``details``), in order."""
        results: list[AuditResult] = []
        for item in items:
            results.append(
                await self.log_user_action(
                    AuditContext(
                        user_id=user_id,
                        action=f"bulk_{operation}",
                        resource=item["resource"],
                        ip_address=ip_address,
                        user_agent=user_agent,
                    ),
                    item["result"],
                    {"bulk_operation": operation, **(item.get("details") or {})},
                )
            )
        return results
