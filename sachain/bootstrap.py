"""Process entry point wiring: logging and the service graph.

Only this module reads :class:`config.settings.Settings`; everything it builds
receives explicit config objects.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import structlog

from config.settings import Settings
from sachain.privacy import redact_pii
from sachain.repositories import (
    AuditLogRepository,
    ComplianceRepository,
    KYCDocumentRepository,
    UserRepository,
)
from sachain.services import AuditEnhancer, ComplianceWorkflows, EventPublisher, KYCReviewService
from sachain.storage import BackoffExecutor, RepositoryConfig, TableBackend, create_backend

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def configure_logging(settings: Settings) -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_pii,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            settings.log_level.upper(),
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Service graph
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ComplianceServices:
    backend: TableBackend
    users: UserRepository
    kyc_documents: KYCDocumentRepository
    audit_logs: AuditLogRepository
    compliance: ComplianceRepository
    audit_enhancer: AuditEnhancer
    workflows: ComplianceWorkflows
    kyc_review: KYCReviewService

    async def close(self) -> None:
        await self.backend.close()


def build_services(
    settings: Settings,
    backend: TableBackend | None = None,
    *,
    publisher: EventPublisher | None = None,
) -> ComplianceServices:
    """Wire backend -> repositories -> services.

    All repositories share one backend and one retry executor.
    """
    backend = backend if backend is not None else create_backend(settings)
    config = RepositoryConfig.from_settings(settings)
    executor = BackoffExecutor(config.retry)

    users = UserRepository(backend, config, executor)
    kyc_documents = KYCDocumentRepository(backend, config, executor)
    audit_logs = AuditLogRepository(backend, config, executor)
    compliance = ComplianceRepository(backend, config, executor)

    logger.info(
        "bootstrap.services_built",
        backend=type(backend).__name__,
        table=config.table_name,
        max_retries=config.retry.max_retries,
    )
    return ComplianceServices(
        backend=backend,
        users=users,
        kyc_documents=kyc_documents,
        audit_logs=audit_logs,
        compliance=compliance,
        audit_enhancer=AuditEnhancer(audit_logs, compliance),
        workflows=ComplianceWorkflows(
            compliance, audit_logs, deletion_batch_size=settings.deletion_batch_size
        ),
        kyc_review=KYCReviewService(kyc_documents, users, audit_logs, publisher),
    )


@asynccontextmanager
async def open_services(
    settings: Settings | None = None,
    backend: TableBackend | None = None,
    *,
    publisher: EventPublisher | None = None,
    configure_logs: bool = True,
) -> AsyncIterator[ComplianceServices]:
    """Build the service graph for the lifetime of the block, then close the backend."""
    if settings is None:
        from config.settings import settings as default_settings

        settings = default_settings
    if configure_logs:
        configure_logging(settings)
    services = build_services(settings, backend, publisher=publisher)
    logger.info("bootstrap.startup", env=settings.env, backend=settings.store_backend)
    try:
        yield services
    finally:
        await services.close()
        logger.info("bootstrap.shutdown")
