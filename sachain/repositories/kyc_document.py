from __future__ import annotations

import asyncio
import uuid
from typing import Final

import structlog

from sachain.models.enums import DocumentStatus
from sachain.models.user_profile import (
    CreateKYCDocumentInput,
    KYCDocument,
    KYCDocumentStats,
    UpdateKYCDocumentInput,
)
from sachain.repositories.user import user_pk
from sachain.storage.repository import BaseRepository, Pagination, QueryResult, utc_timestamp

logger = structlog.get_logger(__name__)

KYC_SK_PREFIX: Final[str] = "KYC#"
_HAS_APPROVED_SCAN_LIMIT: Final[int] = 50


def document_sk(document_id: str) -> str:
    return f"{KYC_SK_PREFIX}{document_id}"


def document_status_pk(status: DocumentStatus | str) -> str:
    return f"DOCUMENT_STATUS#{status}"


class KYCDocumentRepository(BaseRepository):
    """KYC document metadata (``USER#<id>`` / ``KYC#<doc>``); GSI2 by status."""

    async def create_kyc_document(self, data: CreateKYCDocumentInput) -> KYCDocument:
        timestamp = utc_timestamp()
        document_id = uuid.uuid4().hex
        document = KYCDocument(
            pk=user_pk(data.user_id),
            sk=document_sk(document_id),
            gsi2pk=document_status_pk(DocumentStatus.PENDING),
            gsi2sk=timestamp,
            document_id=document_id,
            user_id=data.user_id,
            document_type=data.document_type,
            s3_bucket=data.s3_bucket,
            s3_key=data.s3_key,
            file_name=data.file_name,
            file_size=data.file_size,
            content_type=data.content_type,
            status=DocumentStatus.PENDING,
            uploaded_at=timestamp,
        )
        await self.put_item(document.to_item())
        logger.info("kyc.document_created", user_id=data.user_id, document_id=document_id)
        return document

    async def get_kyc_document(self, user_id: str, document_id: str) -> KYCDocument | None:
        return await self.get_item(user_pk(user_id), document_sk(document_id), model=KYCDocument)

    async def get_user_kyc_documents(
        self, user_id: str, pagination: Pagination | None = None
    ) -> QueryResult[KYCDocument]:
        return await self.query_items(
            "#PK = :pk AND begins_with(#SK, :sk_prefix)",
            {"#PK": "PK", "#SK": "SK"},
            {":pk": user_pk(user_id), ":sk_prefix": KYC_SK_PREFIX},
            pagination=pagination,
            model=KYCDocument,
        )

    async def update_kyc_document(self, data: UpdateKYCDocumentInput) -> KYCDocument | None:
        """Partial update. Returns ``None`` when there is nothing to write."""
        timestamp = utc_timestamp()
        fields: dict[str, object] = {
            "reviewed_by": data.reviewed_by,
            "review_comments": data.review_comments,
        }
        if data.status is not None:
            fields["status"] = str(data.status)
            fields["reviewed_at"] = timestamp
            fields["GSI2PK"] = document_status_pk(data.status)
            fields["GSI2SK"] = timestamp
        if all(v is None for v in fields.values()):
            return None
        return await self.update_existing_item(
            user_pk(data.user_id), document_sk(data.document_id), fields, model=KYCDocument
        )

    async def approve_document(
        self, user_id: str, document_id: str, reviewed_by: str, comments: str | None = None
    ) -> KYCDocument | None:
        return await self.update_kyc_document(
            UpdateKYCDocumentInput(
                user_id=user_id,
                document_id=document_id,
                status=DocumentStatus.APPROVED,
                reviewed_by=reviewed_by,
                review_comments=comments,
            )
        )

    async def reject_document(
        self, user_id: str, document_id: str, reviewed_by: str, comments: str | None = None
    ) -> KYCDocument | None:
        return await self.update_kyc_document(
            UpdateKYCDocumentInput(
                user_id=user_id,
                document_id=document_id,
                status=DocumentStatus.REJECTED,
                reviewed_by=reviewed_by,
                review_comments=comments,
            )
        )

    async def delete_kyc_document(self, user_id: str, document_id: str) -> None:
        await self.delete_item(user_pk(user_id), document_sk(document_id))

    async def get_documents_by_status(
        self, status: DocumentStatus, pagination: Pagination | None = None
    ) -> QueryResult[KYCDocument]:
        return await self.query_items(
            "#GSI2PK = :gsi2pk",
            {"#GSI2PK": "GSI2PK"},
            {":gsi2pk": document_status_pk(status)},
            index_name="GSI2",
            pagination=pagination,
            model=KYCDocument,
        )

    async def get_pending_documents(self, pagination: Pagination | None = None) -> QueryResult[KYCDocument]:
        return await self.get_documents_by_status(DocumentStatus.PENDING, pagination)

    async def get_latest_kyc_document(self, user_id: str) -> KYCDocument | None:
        """Most recently uploaded document for *user_id*."""
        documents = await self.query_all_items(
            "#PK = :pk AND begins_with(#SK, :sk_prefix)",
            {"#PK": "PK", "#SK": "SK"},
            {":pk": user_pk(user_id), ":sk_prefix": KYC_SK_PREFIX},
            model=KYCDocument,
        )
        return max(documents, key=lambda d: d.uploaded_at, default=None)

    async def has_approved_kyc(self, user_id: str) -> bool:
        result = await self.get_user_kyc_documents(user_id, Pagination(limit=_HAS_APPROVED_SCAN_LIMIT))
        return any(doc.status == DocumentStatus.APPROVED for doc in result.items)

    async def get_document_stats(self) -> KYCDocumentStats:
        page = Pagination(limit=self.config.audit_stats_limit)
        uploaded, pending, approved, rejected = await asyncio.gather(
            self.get_documents_by_status(DocumentStatus.UPLOADED, page),
            self.get_documents_by_status(DocumentStatus.PENDING, page),
            self.get_documents_by_status(DocumentStatus.APPROVED, page),
            self.get_documents_by_status(DocumentStatus.REJECTED, page),
        )
        return KYCDocumentStats(
            total_uploaded=uploaded.count,
            total_pending=pending.count,
            total_approved=approved.count,
            total_rejected=rejected.count,
        )
