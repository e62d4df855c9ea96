from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

SECRET_NAME_PATTERN = r"^[a-zA-Z0-9_-]+$"
MAX_NAME_LENGTH = 255
MAX_VALUE_LENGTH = 10000
MAX_REASON_LENGTH = 500
MAX_PAGE_SIZE = 100


class SecretCreateIn(BaseModel):
    project_id: UUID
    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH, pattern=SECRET_NAME_PATTERN)
    value: str = Field(min_length=1, max_length=MAX_VALUE_LENGTH)


class SecretRotateIn(BaseModel):
    value: str = Field(min_length=1, max_length=MAX_VALUE_LENGTH)
    rotation_reason: str | None = Field(default=None, max_length=MAX_REASON_LENGTH)


class SecretVersionOut(BaseModel):
    """Version metadata. Never carries the value or its ciphertext."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    project_id: UUID
    name: str
    version: int
    active: bool
    rotated_from: UUID | None = None
    rotation_reason: str | None = None
    created_by: str | None = None
    created_at: datetime
    grace_period_ends_at: datetime | None = None
    deleted_at: datetime | None = None


class SecretValueOut(SecretVersionOut):
    value: str


class SecretRotationOut(BaseModel):
    secret: SecretVersionOut
    previous_id: UUID
    previous_version: int
    grace_period_ends_at: datetime
    grace_period_hours: int


class SecretDeleteOut(BaseModel):
    deleted_at: datetime
    versions_deleted: int
    hard_delete_scheduled_at: datetime


class SecretListOut(BaseModel):
    items: list[SecretVersionOut]
    total: int
    limit: int
    offset: int
