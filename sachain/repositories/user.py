from __future__ import annotations

from typing import Final

import structlog

from sachain.models.enums import KYCStatus
from sachain.models.user_profile import CreateUserProfileInput, UpdateUserProfileInput, UserProfile
from sachain.storage.repository import BaseRepository, Pagination, QueryResult, utc_timestamp

logger = structlog.get_logger(__name__)

PROFILE_SK: Final[str] = "PROFILE"


def user_pk(user_id: str) -> str:
    return f"USER#{user_id}"


def kyc_status_pk(status: KYCStatus | str) -> str:
    return f"KYC_STATUS#{status}"


class UserRepository(BaseRepository):
    """User profiles (``USER#<id>`` / ``PROFILE``)."""

    async def create_user_profile(self, data: CreateUserProfileInput) -> UserProfile:
        timestamp = utc_timestamp()
        profile = UserProfile(
            pk=user_pk(data.user_id),
            sk=PROFILE_SK,
            gsi1pk=kyc_status_pk(KYCStatus.NOT_STARTED),
            gsi1sk=timestamp,
            user_id=data.user_id,
            email=data.email,
            first_name=data.first_name,
            last_name=data.last_name,
            user_type=data.user_type,
            kyc_status=KYCStatus.NOT_STARTED,
            created_at=timestamp,
            updated_at=timestamp,
            email_verified=data.email_verified,
        )
        await self.put_item(profile.to_item())
        logger.info("user.profile_created", user_id=data.user_id, user_type=data.user_type)
        return profile

    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        return await self.get_item(user_pk(user_id), PROFILE_SK, model=UserProfile)

    async def update_user_profile(self, data: UpdateUserProfileInput) -> UserProfile:
        """Partial update; only supplied fields are written.

        A KYC status change also moves the profile to the matching GSI1
        partition.
        """
        timestamp = utc_timestamp()
        fields: dict[str, object] = {
            "updated_at": timestamp,
            "first_name": data.first_name,
            "last_name": data.last_name,
            "last_login_at": data.last_login_at,
            "email_verified": data.email_verified,
        }
        if data.kyc_status is not None:
            fields["kyc_status"] = str(data.kyc_status)
            fields["GSI1PK"] = kyc_status_pk(data.kyc_status)
            fields["GSI1SK"] = timestamp
        return await self.update_existing_item(user_pk(data.user_id), PROFILE_SK, fields, model=UserProfile)

    async def update_kyc_status(self, user_id: str, status: KYCStatus) -> UserProfile:
        return await self.update_user_profile(UpdateUserProfileInput(user_id=user_id, kyc_status=status))

    async def update_last_login(self, user_id: str) -> UserProfile:
        return await self.update_user_profile(UpdateUserProfileInput(user_id=user_id, last_login_at=utc_timestamp()))

    async def delete_user_profile(self, user_id: str) -> None:
        await self.delete_item(user_pk(user_id), PROFILE_SK)

    async def user_exists(self, user_id: str) -> bool:
        return await self.get_user_profile(user_id) is not None

    async def get_users_by_kyc_status(
        self, status: KYCStatus, pagination: Pagination | None = None
    ) -> QueryResult[UserProfile]:
        return await self.query_items(
            "#GSI1PK = :gsi1pk",
            {"#GSI1PK": "GSI1PK"},
            {":gsi1pk": kyc_status_pk(status)},
            index_name="GSI1",
            pagination=pagination,
            model=UserProfile,
        )

    async def get_user_by_email(self, email: str) -> UserProfile | None:
        # No index on email; bounded scan.
        matches = await self.scan_all_items(
            "#email = :email AND #SK = :sk",
            {"#email": "email", "#SK": "SK"},
            {":email": email, ":sk": PROFILE_SK},
            max_items=1,
            page_size=self.config.export_max_items,
            model=UserProfile,
        )
        return matches[0] if matches else None

    async def batch_get_user_profiles(self, user_ids: list[str]) -> list[UserProfile]:
        keys = [{"PK": user_pk(uid), "SK": PROFILE_SK} for uid in user_ids]
        return await self.batch_get_items(keys, model=UserProfile)
