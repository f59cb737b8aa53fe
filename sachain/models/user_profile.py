from __future__ import annotations

from pydantic import BaseModel, Field

from sachain.models.enums import DocumentStatus, DocumentType, KYCStatus, UserType
from sachain.models.storage import StoredItem


class UserProfile(StoredItem):
    """Platform user; GSI1 groups profiles by KYC status."""

    gsi1pk: str = Field(alias="GSI1PK")  # KYC_STATUS#<status>
    gsi1sk: str = Field(alias="GSI1SK")  # <created_at>
    user_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    user_type: UserType
    kyc_status: KYCStatus = KYCStatus.NOT_STARTED
    created_at: str
    updated_at: str
    last_login_at: str | None = None
    email_verified: bool = False


class CreateUserProfileInput(BaseModel):
    user_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    first_name: str | None = None
    last_name: str | None = None
    user_type: UserType
    email_verified: bool = False


class UpdateUserProfileInput(BaseModel):
    user_id: str
    first_name: str | None = None
    last_name: str | None = None
    kyc_status: KYCStatus | None = None
    last_login_at: str | None = None
    email_verified: bool | None = None


class KYCDocument(StoredItem):
    """Uploaded identity document metadata (the file itself lives elsewhere)."""

    gsi2pk: str = Field(alias="GSI2PK")  # DOCUMENT_STATUS#<status>
    gsi2sk: str = Field(alias="GSI2SK")  # <uploaded_at>
    document_id: str
    user_id: str
    document_type: DocumentType = DocumentType.NATIONAL_ID
    s3_bucket: str
    s3_key: str
    file_name: str
    file_size: int = Field(ge=0)
    content_type: str
    status: DocumentStatus
    uploaded_at: str
    reviewed_at: str | None = None
    reviewed_by: str | None = None
    review_comments: str | None = None
    expires_at: str | None = None


class CreateKYCDocumentInput(BaseModel):
    user_id: str = Field(min_length=1)
    document_type: DocumentType = DocumentType.NATIONAL_ID
    s3_bucket: str
    s3_key: str
    file_name: str
    file_size: int = Field(ge=0)
    content_type: str


class UpdateKYCDocumentInput(BaseModel):
    user_id: str
    document_id: str
    status: DocumentStatus | None = None
    reviewed_by: str | None = None
    review_comments: str | None = None


class KYCDocumentStats(BaseModel):
    total_uploaded: int = 0
    total_pending: int = 0
    total_approved: int = 0
    total_rejected: int = 0
