from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from sachain.models.enums import ActionResult
from sachain.models.storage import StoredItem


class AuditLogEntry(StoredItem):
    """Append-only record of a user, admin or system action.

    Partitioned by day (``AUDIT#<YYYY-MM-DD>``); the sort key
    ``<timestamp>#<actor>#<action>#<suffix>`` orders entries chronologically
    within the day.  Never updated.
    """

    user_id: str
    action: str
    resource: str
    timestamp: str
    result: ActionResult
    ip_address: str | None = None
    user_agent: str | None = None
    error_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def log_id(self) -> str:
        return self.sk


class AuditContext(BaseModel):
    """Who did what, and from where."""

    user_id: str
    action: str
    resource: str
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    request_id: str | None = None


class AuditResult(BaseModel):
    success: bool
    audit_log_id: str | None = None
    compliance_event_id: str | None = None
    error: str | None = None


class AuditStats(BaseModel):
    total_logs: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    action_breakdown: dict[str, int] = Field(default_factory=dict)
