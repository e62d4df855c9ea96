import uuid
from datetime import datetime, timedelta

from sqlalchemy import String, Boolean, Integer, DateTime, Text, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID

from .base import Base

HARD_DELETE_AFTER_DAYS = 30


class SecretVersion(Base):
    __tablename__ = "secret_versions"
    __table_args__ = (
        UniqueConstraint("project_id", "name", "version", name="uq_secret_versions_project_name_version"),
        Index("ix_secret_versions_project_name", "project_id", "name"),
        Index("ix_secret_versions_grace_period_ends_at", "grace_period_ends_at"),
        Index("ix_secret_versions_deleted_at", "deleted_at"),
        # At most one live active version per name
        Index(
            "uq_secret_versions_one_active",
            "project_id",
            "name",
            unique=True,
            postgresql_where=text("active AND deleted_at IS NULL"),
            sqlite_where=text("active = 1 AND deleted_at IS NULL"),
        ),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # "<keyVersion>:<base64(nonce||ciphertext||tag)>"
    value_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Weak reference to the superseded version, no FK so purges never cascade
    rotated_from: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    rotation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    grace_period_ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    grace_period_warning_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    grace_period_notified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    hard_delete_after_days: Mapped[int] = mapped_column(Integer, default=HARD_DELETE_AFTER_DAYS, nullable=False)

    @property
    def hard_delete_scheduled_at(self) -> datetime | None:
        if self.deleted_at is None:
            return None
        return self.deleted_at + timedelta(days=self.hard_delete_after_days)

    def __repr__(self):
        return f"<SecretVersion(id={self.id}, name={self.name}, version={self.version}, active={self.active})>"
