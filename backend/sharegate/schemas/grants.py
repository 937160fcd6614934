from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from sharegate.models.grants import GrantStatus

UNLIMITED = "∞"


class GrantSnapshot(BaseModel):
    """Plain copy of a ledger row; what the cache stores and the services pass around."""

    model_config = ConfigDict(from_attributes=True)

    token: str
    owner_id: str | None = None
    blob_key: str
    display_name: str
    original_name: str | None = None
    mime: str
    size_bytes: int
    created_at: datetime
    expires_at: datetime | None = None
    download_cap: int | None = None
    download_count: int = 0
    status: GrantStatus = GrantStatus.ACTIVE
    terminated_at: datetime | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @property
    def unlimited(self) -> bool:
        return self.download_cap is None

    @property
    def remaining_downloads(self) -> int | None:
        if self.download_cap is None:
            return None
        return max(0, self.download_cap - self.download_count)

    @property
    def quota_spent(self) -> bool:
        return self.download_cap is not None and self.download_count >= self.download_cap

    def past_expiry(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def remaining_label(self) -> str:
        remaining = self.remaining_downloads
        return UNLIMITED if remaining is None else str(remaining)


class UploadOut(BaseModel):
    token: str
    link: str
    expires_in: str
    expires_at: datetime | None = None
    unlimited: bool
    max_downloads: int | str
    remaining_downloads: int | str


class PublicStatusOut(BaseModel):
    valid: bool = True
    file_name: str
    file_size: int
    mime: str
    download_count: int
    remaining_downloads: int | str
    unlimited: bool
    expires_at: datetime | None = None
    never_expires: bool
    # only for the owner or an admin
    owner: str | None = None
    status: GrantStatus | None = None
    expires_in: str | None = None


class OwnedFileOut(BaseModel):
    token: str
    file: str
    mime: str
    status: GrantStatus
    unlimited: bool
    remaining_downloads: int | str
    expires_in: str
    expires_at: datetime | None = None


class MyFilesOut(BaseModel):
    files: list[OwnedFileOut]
    page: int
    limit: int


class DeleteOut(BaseModel):
    message: str
    file_name: str
    permanent: bool = False


class RestoreOut(BaseModel):
    message: str
    file_name: str


class SweepOut(BaseModel):
    found: int
    cleaned: int
    failed: int = 0
