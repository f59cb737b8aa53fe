"""Tests for the day-partitioned audit trail."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from sachain.models.enums import ActionResult
from sachain.repositories import AuditLogRepository
from sachain.repositories.audit_log import audit_pk
from sachain.storage.backends import InMemoryTableBackend
from sachain.storage.errors import StoreOperationError
from sachain.storage.repository import Pagination, RepositoryConfig, utc_now, utc_timestamp


def _today() -> str:
    return utc_timestamp()[:10]


class TestCreateAuditLog:
    async def test_entry_keys_and_fields(self, audit_repo: AuditLogRepository) -> None:
        entry = await audit_repo.create_audit_log(
            "u1", "kyc_upload", "kyc_document:d1", ActionResult.SUCCESS, ip_address="10.0.0.1"
        )
        assert entry.pk == audit_pk(entry.timestamp[:10])
        assert entry.sk.startswith(f"{entry.timestamp}#u1#kyc_upload#")
        assert entry.log_id == entry.sk
        assert entry.ip_address == "10.0.0.1"

    async def test_same_tick_entries_do_not_collide(self, audit_repo: AuditLogRepository, backend) -> None:
        for _ in range(5):
            await audit_repo.create_audit_log("u1", "login", "session", "success")
        assert len(backend) == 5, "every audit write must produce its own record"

    async def test_none_details_are_dropped(self, audit_repo: AuditLogRepository) -> None:
        entry = await audit_repo.create_audit_log(
            "u1", "login", "session", "success", details={"session_id": None, "method": "otp"}
        )
        assert entry.details == {"method": "otp"}

    async def test_invalid_result_rejected(self, audit_repo: AuditLogRepository) -> None:
        with pytest.raises(ValueError):
            await audit_repo.create_audit_log("u1", "login", "session", "maybe")

    async def test_try_create_swallows_storage_failure(self) -> None:
        backend = AsyncMock()
        backend.put.side_effect = StoreOperationError("AccessDeniedException", "denied")
        repo = AuditLogRepository(backend, RepositoryConfig())
        assert await repo.try_create_audit_log("u1", "login", "session", "success") is None


class TestRetrieval:
    async def test_by_date_in_chronological_order(self, audit_repo: AuditLogRepository) -> None:
        for action in ("a", "b", "c"):
            await audit_repo.create_audit_log("u1", action, "r", "success")
        logs = await audit_repo.get_audit_logs_by_date(_today())
        assert [log.action for log in logs.items] == ["a", "b", "c"]
        newest = await audit_repo.get_audit_logs_by_date(_today(), newest_first=True)
        assert [log.action for log in newest.items] == ["c", "b", "a"]

    async def test_by_user_action_result_resource(self, audit_repo: AuditLogRepository) -> None:
        await audit_repo.create_audit_log("u1", "login", "session", "success")
        await audit_repo.create_audit_log("u2", "login", "session", "failure", error_message="bad otp")
        await audit_repo.create_audit_log("u1", "profile_update", "user_profile", "success")

        assert (await audit_repo.get_audit_logs_by_user("u1")).count == 2
        assert (await audit_repo.get_audit_logs_by_action("login")).count == 2
        failed = await audit_repo.get_failed_audit_logs()
        assert [log.user_id for log in failed.items] == ["u2"]
        assert (await audit_repo.get_audit_logs_by_resource("user_profile")).count == 1

    async def test_by_user_ignores_non_audit_partitions(
        self, audit_repo: AuditLogRepository, backend: InMemoryTableBackend
    ) -> None:
        await backend.put({"PK": "USER#u1", "SK": "PROFILE", "user_id": "u1"})
        await audit_repo.create_audit_log("u1", "login", "session", "success")
        assert (await audit_repo.get_audit_logs_by_user("u1")).count == 1

    async def test_date_range(self, audit_repo: AuditLogRepository, backend: InMemoryTableBackend) -> None:
        await audit_repo.create_audit_log("u1", "login", "session", "success")
        old_day = utc_timestamp(utc_now() - timedelta(days=40))[:10]
        await backend.put(
            {
                "PK": audit_pk(old_day),
                "SK": f"{old_day}T00:00:00.000000Z#u1#login#x",
                "user_id": "u1",
                "action": "login",
                "resource": "session",
                "timestamp": f"{old_day}T00:00:00.000000Z",
                "result": "success",
            }
        )
        recent_start = utc_timestamp(utc_now() - timedelta(days=7))[:10]
        recent = await audit_repo.get_audit_logs_by_date_range(recent_start, _today())
        assert recent.count == 1
        everything = await audit_repo.get_audit_logs_by_date_range(old_day, _today())
        assert everything.count == 2

    async def test_stats(self, audit_repo: AuditLogRepository) -> None:
        await audit_repo.create_audit_log("u1", "login", "session", "success")
        await audit_repo.create_audit_log("u1", "login", "session", "failure")
        await audit_repo.create_audit_log("u1", "kyc_upload", "doc", "success")
        stats = await audit_repo.get_audit_stats(_today())
        assert stats.total_logs == 3
        assert stats.successful_actions == 2
        assert stats.failed_actions == 1
        assert stats.action_breakdown == {"login": 2, "kyc_upload": 1}

    async def test_pagination(self, audit_repo: AuditLogRepository) -> None:
        for i in range(4):
            await audit_repo.create_audit_log("u1", f"a{i}", "r", "success")
        first = await audit_repo.get_audit_logs_by_date(_today(), Pagination(limit=3))
        assert first.count == 3 and first.last_evaluated_key is not None

    async def test_date_range_defaults_to_bounded_page(self, backend, repo_config, executor) -> None:
        repo = AuditLogRepository(backend, replace(repo_config, audit_stats_limit=3), executor)
        for i in range(5):
            await repo.create_audit_log("u1", f"a{i}", "r", "success")
        first = await repo.get_audit_logs_by_date_range(_today(), _today())
        assert first.count == 3
        assert first.last_evaluated_key is not None
        rest = await repo.get_audit_logs_by_date_range(
            _today(), _today(), Pagination(limit=10, exclusive_start_key=first.last_evaluated_key)
        )
        assert rest.count == 2


class TestCleanup:
    async def test_cleanup_removes_only_old_partitions(
        self, audit_repo: AuditLogRepository, backend: InMemoryTableBackend
    ) -> None:
        await audit_repo.create_audit_log("u1", "login", "session", "success")
        old_day = utc_timestamp(utc_now() - timedelta(days=120))[:10]
        for i in range(3):
            await backend.put({"PK": audit_pk(old_day), "SK": f"old-{i}"})
        await backend.put({"PK": "USER#u1", "SK": "PROFILE"})

        deleted = await audit_repo.cleanup_old_logs(90)
        assert deleted == 3
        remaining = {item["PK"] for item in backend.snapshot()}
        assert remaining == {audit_pk(_today()), "USER#u1"}

    async def test_cleanup_reaches_past_leading_non_audit_items(self, backend, repo_config, executor) -> None:
        repo = AuditLogRepository(backend, replace(repo_config, retention_batch_limit=5), executor)
        for i in range(12):
            await backend.put({"PK": f"ACCOUNT#{i:02d}", "SK": "x"})
        old_day = utc_timestamp(utc_now() - timedelta(days=120))[:10]
        for i in range(7):
            await backend.put({"PK": audit_pk(old_day), "SK": f"old-{i}"})

        assert await repo.cleanup_old_logs(90) == 5
        assert await repo.cleanup_old_logs(90) == 2
        assert await repo.cleanup_old_logs(90) == 0
        assert len(backend) == 12

    async def test_negative_days_rejected(self, audit_repo: AuditLogRepository) -> None:
        with pytest.raises(ValueError):
            await audit_repo.cleanup_old_logs(-1)


class TestConvenienceWriters:
    async def test_log_kyc_review(self, audit_repo: AuditLogRepository) -> None:
        entry = await audit_repo.log_kyc_review("admin-1", "u1", "d1", "approve", "success", details={"x": 1})
        assert entry.action == "kyc_approve"
        assert entry.resource == "kyc_document:d1"
        assert entry.details == {"document_id": "d1", "target_user_id": "u1", "review_action": "approve", "x": 1}

    async def test_log_authentication_failure(self, audit_repo: AuditLogRepository) -> None:
        entry = await audit_repo.log_authentication("u1", "failure", error_message="expired token")
        assert entry.action == "authentication"
        assert entry.error_message == "expired token"

    async def test_log_profile_update(self, audit_repo: AuditLogRepository) -> None:
        entry = await audit_repo.log_profile_update("u1", ["first_name"], "success")
        assert entry.details == {"updated_fields": ["first_name"]}

    async def test_log_kyc_upload(self, audit_repo: AuditLogRepository) -> None:
        entry = await audit_repo.log_kyc_upload("u1", "d1", "success")
        assert entry.resource == "kyc_document:d1"
