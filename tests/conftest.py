"""Shared fixtures: an in-memory table and repositories that never sleep."""

from __future__ import annotations

import pytest

from sachain.repositories import (
    AuditLogRepository,
    ComplianceRepository,
    KYCDocumentRepository,
    UserRepository,
)
from sachain.storage.backends import InMemoryTableBackend
from sachain.storage.repository import RepositoryConfig
from sachain.storage.retry import BackoffExecutor, JitterType, RetryConfig


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def backend() -> InMemoryTableBackend:
    return InMemoryTableBackend()


@pytest.fixture
def repo_config() -> RepositoryConfig:
    return RepositoryConfig(retry=RetryConfig(max_retries=2, jitter=JitterType.NONE))


@pytest.fixture
def executor(repo_config: RepositoryConfig) -> BackoffExecutor:
    return BackoffExecutor(repo_config.retry, sleep=_no_sleep)


@pytest.fixture
def user_repo(backend, repo_config, executor) -> UserRepository:
    return UserRepository(backend, repo_config, executor)


@pytest.fixture
def kyc_repo(backend, repo_config, executor) -> KYCDocumentRepository:
    return KYCDocumentRepository(backend, repo_config, executor)


@pytest.fixture
def audit_repo(backend, repo_config, executor) -> AuditLogRepository:
    return AuditLogRepository(backend, repo_config, executor)


@pytest.fixture
def compliance_repo(backend, repo_config, executor) -> ComplianceRepository:
    return ComplianceRepository(backend, repo_config, executor)
