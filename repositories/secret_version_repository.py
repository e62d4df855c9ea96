import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar
from uuid import UUID

from sqlalchemy import and_, func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.settings import settings
from models.secret_version import SecretVersion

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DeletedGroup:
    """All versions of a name that were soft-deleted by the same call."""

    project_id: UUID
    name: str
    deleted_at: datetime
    hard_delete_after_days: int

    @property
    def purge_after(self) -> datetime:
        return self.deleted_at + timedelta(days=self.hard_delete_after_days)


class SecretVersionRepository:
    """Transactional reads and writes over ``secret_versions``.

    No business rules live here. Every multi-row change goes through
    ``run_in_transaction`` so it either fully commits or fully rolls back.
    """

    def __init__(
        self,
        db: Session,
        retry_attempts: int = settings.DB_RETRY_ATTEMPTS,
        retry_min_wait: float = settings.DB_RETRY_MIN_WAIT,
        retry_max_wait: float = settings.DB_RETRY_MAX_WAIT,
    ):
        self.db = db
        self.retry_attempts = retry_attempts
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait

    # Transactions

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        try:
            yield self.db
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def run_in_transaction(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` in one transaction.

        Deadlocks, lock timeouts and serialization failures surface as
        ``OperationalError`` and are retried with exponential backoff. Any
        other exception propagates on the first attempt.
        """
        for attempt in Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_min_wait, min=self.retry_min_wait, max=self.retry_max_wait),
            retry=retry_if_exception_type(OperationalError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                with self.transaction():
                    return operation()

    # Writes

    def insert(self, secret: SecretVersion) -> SecretVersion:
        self.db.add(secret)
        self.db.flush()
        return secret

    def update_active_flag(
        self,
        secret_id: UUID,
        active: bool,
        grace_period_ends_at: datetime | None = None,
    ) -> bool:
        """Flip ``active`` only if the row is live and currently the other way round."""
        values = {SecretVersion.active: active}
        if not active:
            values[SecretVersion.grace_period_ends_at] = grace_period_ends_at
        updated = (
            self.db.query(SecretVersion)
            .filter(
                SecretVersion.id == secret_id,
                SecretVersion.active == (not active),
                SecretVersion.deleted_at.is_(None),
            )
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    def mark_deleted_for_name(self, project_id: UUID, name: str, deleted_at: datetime) -> int:
        return (
            self.db.query(SecretVersion)
            .filter(
                SecretVersion.project_id == project_id,
                SecretVersion.name == name,
                SecretVersion.deleted_at.is_(None),
            )
            .update({SecretVersion.deleted_at: deleted_at}, synchronize_session="fetch")
        )

    def mark_grace_notified(self, secret_id: UUID, now: datetime) -> bool:
        updated = (
            self.db.query(SecretVersion)
            .filter(SecretVersion.id == secret_id, SecretVersion.grace_period_notified_at.is_(None))
            .update({SecretVersion.grace_period_notified_at: now}, synchronize_session="fetch")
        )
        return updated == 1

    def mark_grace_warning_sent(self, secret_id: UUID, now: datetime) -> bool:
        updated = (
            self.db.query(SecretVersion)
            .filter(SecretVersion.id == secret_id, SecretVersion.grace_period_warning_sent_at.is_(None))
            .update({SecretVersion.grace_period_warning_sent_at: now}, synchronize_session="fetch")
        )
        return updated == 1

    def update_ciphertext(self, secret_id: UUID, expected: str, value_encrypted: str) -> bool:
        """Swap the stored ciphertext if nobody changed it in the meantime."""
        updated = (
            self.db.query(SecretVersion)
            .filter(SecretVersion.id == secret_id, SecretVersion.value_encrypted == expected)
            .update({SecretVersion.value_encrypted: value_encrypted}, synchronize_session="fetch")
        )
        return updated == 1

    def purge(self, group: DeletedGroup, now: datetime) -> int:
        """Physically delete a soft-deleted group, only once its retention has passed."""
        threshold = now - timedelta(days=group.hard_delete_after_days)
        return (
            self.db.query(SecretVersion)
            .filter(
                SecretVersion.project_id == group.project_id,
                SecretVersion.name == group.name,
                SecretVersion.deleted_at == group.deleted_at,
                SecretVersion.hard_delete_after_days == group.hard_delete_after_days,
                SecretVersion.deleted_at <= threshold,
            )
            .delete(synchronize_session="fetch")
        )

    # Reads

    def select_by_id(self, secret_id: UUID, include_deleted: bool = False, for_update: bool = False) -> SecretVersion | None:
        query = self.db.query(SecretVersion).filter(SecretVersion.id == secret_id)
        if not include_deleted:
            query = query.filter(SecretVersion.deleted_at.is_(None))
        if for_update:
            query = query.with_for_update()
        return query.first()

    def select_active_by_name(self, project_id: UUID, name: str) -> SecretVersion | None:
        return (
            self.db.query(SecretVersion)
            .filter(
                SecretVersion.project_id == project_id,
                SecretVersion.name == name,
                SecretVersion.active.is_(True),
                SecretVersion.deleted_at.is_(None),
            )
            .order_by(SecretVersion.version.desc())
            .first()
        )

    def select_max_version(self, project_id: UUID, name: str) -> int:
        """Highest version ever issued for a name, soft-deleted rows included."""
        return (
            self.db.query(func.max(SecretVersion.version))
            .filter(SecretVersion.project_id == project_id, SecretVersion.name == name)
            .scalar()
            or 0
        )

    def select_by_version(self, project_id: UUID, name: str, version: int) -> SecretVersion | None:
        return (
            self.db.query(SecretVersion)
            .filter(
                SecretVersion.project_id == project_id,
                SecretVersion.name == name,
                SecretVersion.version == version,
                SecretVersion.deleted_at.is_(None),
            )
            .first()
        )

    def select_all_versions_by_name(self, project_id: UUID, name: str, include_deleted: bool = False) -> list[SecretVersion]:
        query = self.db.query(SecretVersion).filter(
            SecretVersion.project_id == project_id,
            SecretVersion.name == name,
        )
        if not include_deleted:
            query = query.filter(SecretVersion.deleted_at.is_(None))
        return query.order_by(SecretVersion.version.desc()).all()

    def select_latest_per_name(
        self,
        project_id: UUID,
        active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[SecretVersion], int]:
        latest = (
            self.db.query(
                SecretVersion.name.label("name"),
                func.max(SecretVersion.version).label("max_version"),
            )
            .filter(SecretVersion.project_id == project_id, SecretVersion.deleted_at.is_(None))
            .group_by(SecretVersion.name)
            .subquery()
        )
        query = (
            self.db.query(SecretVersion)
            .join(latest, and_(SecretVersion.name == latest.c.name, SecretVersion.version == latest.c.max_version))
            .filter(SecretVersion.project_id == project_id, SecretVersion.deleted_at.is_(None))
        )
        if active is not None:
            query = query.filter(SecretVersion.active.is_(active))

        total = query.count()
        items = query.order_by(SecretVersion.name).offset(offset).limit(limit).all()
        return items, total

    def select_expired_grace_periods(self, now: datetime, include_notified: bool = False) -> list[SecretVersion]:
        query = self.db.query(SecretVersion).filter(
            SecretVersion.active.is_(False),
            SecretVersion.deleted_at.is_(None),
            SecretVersion.grace_period_ends_at.isnot(None),
            SecretVersion.grace_period_ends_at <= now,
        )
        if not include_notified:
            query = query.filter(SecretVersion.grace_period_notified_at.is_(None))
        return query.order_by(SecretVersion.grace_period_ends_at).all()

    def select_grace_periods_ending(self, now: datetime, window: timedelta) -> list[SecretVersion]:
        return (
            self.db.query(SecretVersion)
            .filter(
                SecretVersion.active.is_(False),
                SecretVersion.deleted_at.is_(None),
                SecretVersion.grace_period_warning_sent_at.is_(None),
                SecretVersion.grace_period_ends_at > now,
                SecretVersion.grace_period_ends_at <= now + window,
            )
            .order_by(SecretVersion.grace_period_ends_at)
            .all()
        )

    def select_in_grace_period(self, now: datetime, project_id: UUID | None = None) -> list[SecretVersion]:
        query = self.db.query(SecretVersion).filter(
            SecretVersion.active.is_(False),
            SecretVersion.deleted_at.is_(None),
            SecretVersion.grace_period_ends_at > now,
        )
        if project_id is not None:
            query = query.filter(SecretVersion.project_id == project_id)
        return query.order_by(SecretVersion.grace_period_ends_at).all()

    def select_hard_delete_candidates(self, now: datetime) -> list[DeletedGroup]:
        """Soft-deleted groups whose retention has passed, oldest first.

        Retention is per row, so the threshold is applied in SQL once per
        distinct ``hard_delete_after_days`` value.
        """
        retention_days = [
            days
            for (days,) in (
                self.db.query(SecretVersion.hard_delete_after_days)
                .filter(SecretVersion.deleted_at.isnot(None))
                .distinct()
                .all()
            )
        ]
        groups = []
        for days in retention_days:
            rows = (
                self.db.query(SecretVersion.project_id, SecretVersion.name, SecretVersion.deleted_at)
                .filter(
                    SecretVersion.deleted_at.isnot(None),
                    SecretVersion.hard_delete_after_days == days,
                    SecretVersion.deleted_at <= now - timedelta(days=days),
                )
                .group_by(SecretVersion.project_id, SecretVersion.name, SecretVersion.deleted_at)
                .all()
            )
            groups.extend(
                DeletedGroup(project_id=project_id, name=name, deleted_at=deleted_at, hard_delete_after_days=days)
                for project_id, name, deleted_at in rows
            )
        return sorted(groups, key=lambda group: group.deleted_at)

    def select_not_under_key(
        self,
        key_version: int,
        limit: int = 500,
        exclude_ids: set[UUID] | None = None,
    ) -> list[SecretVersion]:
        """Rows, soft-deleted included, whose ciphertext was sealed with another key."""
        query = self.db.query(SecretVersion).filter(~SecretVersion.value_encrypted.startswith(f"{key_version}:"))
        if exclude_ids:
            query = query.filter(SecretVersion.id.notin_(exclude_ids))
        return query.order_by(SecretVersion.created_at, SecretVersion.id).limit(limit).all()
