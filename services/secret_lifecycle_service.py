"""
Secret lifecycle: create, read, rotate, list, soft delete.

State machine per (project_id, name), always acting on the live version:

    UNCREATED      --create-->        ACTIVE(v=1)
    ACTIVE(v=n)    --rotate-->        ACTIVE(v=n+1), v=n becomes INACTIVE_GRACE
    INACTIVE_GRACE --grace expires--> INACTIVE_EXPIRED (sweeper, informational)
    any live version --delete-->      DELETED (every version, one timestamp)
    DELETED        --retention-->     PURGED (sweeper, irreversible)

Every mutation is a single database transaction. Audit events are recorded
after commit and can never fail or undo the operation.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from fastapi import Depends, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import AlreadyExistsError, NotActiveError, NotFoundError, SecretError, ValidationError
from core.logging_config import get_logger
from core.settings import settings
from db.session import get_db
from models.secret_version import SecretVersion
from repositories.secret_version_repository import SecretVersionRepository
from schemas.secret import (
    MAX_NAME_LENGTH,
    MAX_PAGE_SIZE,
    MAX_REASON_LENGTH,
    MAX_VALUE_LENGTH,
    SECRET_NAME_PATTERN,
    SecretDeleteOut,
    SecretListOut,
    SecretRotationOut,
    SecretVersionOut,
)
from services import audit_emitter as audit
from services.audit_emitter import AuditEmitter, AuditEvent, LoggingAuditEmitter, emit_safely
from services.key_registry import KeyRegistry
from utils.clock import Clock, utcnow

logger = get_logger(__name__)

_NAME_RE = re.compile(SECRET_NAME_PATTERN)


@dataclass
class ReencryptResult:
    rewritten: int = 0
    failed: list[UUID] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


def validate_name(name: str) -> str:
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Secret name must be between 1 and {MAX_NAME_LENGTH} characters")
    if not _NAME_RE.fullmatch(name):
        raise ValidationError("Secret name can only contain letters, numbers, hyphens, and underscores")
    return name


def validate_value(value: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError("Secret value is required")
    if len(value) > MAX_VALUE_LENGTH:
        raise ValidationError(f"Secret value must be less than {MAX_VALUE_LENGTH:,} characters")
    return value


def validate_reason(reason: str | None) -> str | None:
    if reason is not None and len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"Rotation reason must be less than {MAX_REASON_LENGTH} characters")
    return reason


class SecretLifecycleService:
    def __init__(
        self,
        repository: SecretVersionRepository,
        key_registry: KeyRegistry,
        audit_emitter: AuditEmitter | None = None,
        clock: Clock = utcnow,
        grace_period: timedelta = timedelta(hours=settings.SECRET_GRACE_PERIOD_HOURS),
        hard_delete_after_days: int = settings.SECRET_HARD_DELETE_AFTER_DAYS,
    ):
        self.repository = repository
        self.key_registry = key_registry
        self.audit_emitter = audit_emitter
        self.clock = clock
        self.grace_period = grace_period
        self.hard_delete_after_days = hard_delete_after_days

    def create(self, project_id: UUID, name: str, plaintext: str, created_by: str | None = None) -> SecretVersion:
        validate_name(name)
        value_encrypted = self.key_registry.encrypt_for_storage(validate_value(plaintext))
        del plaintext

        def _create() -> SecretVersion:
            if self.repository.select_active_by_name(project_id, name) is not None:
                raise AlreadyExistsError(f"Secret '{name}' already exists. Use rotate to update it.")
            # Soft-deleted history still holds its version numbers until purged
            version = self.repository.select_max_version(project_id, name) + 1
            try:
                return self.repository.insert(
                    SecretVersion(
                        id=uuid.uuid4(),
                        project_id=project_id,
                        name=name,
                        value_encrypted=value_encrypted,
                        version=version,
                        active=True,
                        created_by=created_by,
                        created_at=self.clock(),
                        hard_delete_after_days=self.hard_delete_after_days,
                    )
                )
            except IntegrityError:
                raise AlreadyExistsError(f"Secret '{name}' already exists. Use rotate to update it.") from None

        secret = self.repository.run_in_transaction(_create)

        logger.info_ctx("Secret created", secret_id=str(secret.id), secret_name=name, version=secret.version)
        self._emit(
            audit.SECRET_CREATED,
            secret,
            actor_id=created_by,
            metadata={"secret_name": name, "version": secret.version},
        )
        return secret

    def get(self, secret_id: UUID, actor_id: str | None = None) -> tuple[SecretVersionOut, str]:
        secret = self.repository.select_by_id(secret_id)
        if secret is None:
            raise NotFoundError()
        return self._reveal(secret, actor_id)

    def get_version(self, secret_id: UUID, version: int, actor_id: str | None = None) -> tuple[SecretVersionOut, str]:
        """Read any live version of the secret that ``secret_id`` belongs to."""
        if version < 1:
            raise ValidationError("Invalid version number")
        reference = self.repository.select_by_id(secret_id)
        if reference is None:
            raise NotFoundError()
        secret = self.repository.select_by_version(reference.project_id, reference.name, version)
        if secret is None:
            raise NotFoundError(f"Version {version} not found for secret '{reference.name}'")
        return self._reveal(secret, actor_id)

    def rotate(
        self,
        secret_id: UUID,
        new_plaintext: str,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> SecretRotationOut:
        validate_reason(reason)
        value_encrypted = self.key_registry.encrypt_for_storage(validate_value(new_plaintext))
        del new_plaintext

        def _rotate() -> tuple[SecretVersion, SecretVersion, datetime]:
            current = self.repository.select_by_id(secret_id, for_update=True)
            if current is None:
                raise NotFoundError()
            if not current.active:
                raise NotActiveError(
                    "This secret version is not active. Rotate the current active version instead."
                )

            now = self.clock()
            grace_period_ends_at = now + self.grace_period
            # Conditional on active=true, a concurrent rotation that got here first leaves nothing to update
            if not self.repository.update_active_flag(current.id, False, grace_period_ends_at=grace_period_ends_at):
                raise NotActiveError("Secret was rotated concurrently. Re-read the active version and retry.")

            try:
                new_secret = self.repository.insert(
                    SecretVersion(
                        id=uuid.uuid4(),
                        project_id=current.project_id,
                        name=current.name,
                        value_encrypted=value_encrypted,
                        version=current.version + 1,
                        active=True,
                        rotated_from=current.id,
                        rotation_reason=reason,
                        created_by=actor_id,
                        created_at=now,
                        hard_delete_after_days=current.hard_delete_after_days,
                    )
                )
            except IntegrityError:
                raise NotActiveError("Secret was rotated concurrently. Re-read the active version and retry.") from None
            return current, new_secret, grace_period_ends_at

        previous, new_secret, grace_period_ends_at = self.repository.run_in_transaction(_rotate)

        logger.info_ctx(
            "Secret rotated",
            old_secret_id=str(previous.id),
            new_secret_id=str(new_secret.id),
            secret_name=new_secret.name,
            old_version=previous.version,
            new_version=new_secret.version,
            grace_period_ends_at=grace_period_ends_at.isoformat(),
        )
        self._emit(
            audit.SECRET_ROTATED,
            new_secret,
            actor_id=actor_id,
            metadata={
                "secret_name": new_secret.name,
                "old_secret_id": str(previous.id),
                "new_secret_id": str(new_secret.id),
                "old_version": previous.version,
                "new_version": new_secret.version,
                "rotation_reason": reason or "Not provided",
            },
        )
        return SecretRotationOut(
            secret=SecretVersionOut.model_validate(new_secret),
            previous_id=previous.id,
            previous_version=previous.version,
            grace_period_ends_at=grace_period_ends_at,
            grace_period_hours=int(self.grace_period.total_seconds() // 3600),
        )

    def list_versions(self, project_id: UUID, name: str) -> list[SecretVersionOut]:
        versions = self.repository.select_all_versions_by_name(project_id, name)
        return [SecretVersionOut.model_validate(v) for v in versions]

    def list_secrets(
        self,
        project_id: UUID,
        active: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> SecretListOut:
        """Latest live version of every secret name in a project."""
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        items, total = self.repository.select_latest_per_name(project_id, active=active, limit=limit, offset=offset)
        return SecretListOut(
            items=[SecretVersionOut.model_validate(item) for item in items],
            total=total,
            limit=limit,
            offset=offset,
        )

    def soft_delete(self, secret_id: UUID, actor_id: str | None = None) -> SecretDeleteOut:
        def _delete() -> tuple[SecretVersion, datetime, int]:
            reference = self.repository.select_by_id(secret_id)
            if reference is None:
                raise NotFoundError()
            deleted_at = self.clock()
            count = self.repository.mark_deleted_for_name(reference.project_id, reference.name, deleted_at)
            if count == 0:
                raise NotFoundError()
            return reference, deleted_at, count

        reference, deleted_at, count = self.repository.run_in_transaction(_delete)
        hard_delete_scheduled_at = deleted_at + timedelta(days=reference.hard_delete_after_days)

        logger.info_ctx(
            "Secret deleted",
            secret_id=str(secret_id),
            secret_name=reference.name,
            versions_deleted=count,
            hard_delete_scheduled_at=hard_delete_scheduled_at.isoformat(),
        )
        self._emit(
            audit.SECRET_DELETED,
            reference,
            actor_id=actor_id,
            metadata={
                "secret_name": reference.name,
                "versions_deleted": count,
                "hard_delete_scheduled_at": hard_delete_scheduled_at,
            },
        )
        return SecretDeleteOut(
            deleted_at=deleted_at,
            versions_deleted=count,
            hard_delete_scheduled_at=hard_delete_scheduled_at,
        )

    def secrets_in_grace_period(self, project_id: UUID | None = None) -> list[SecretVersionOut]:
        versions = self.repository.select_in_grace_period(self.clock(), project_id=project_id)
        return [SecretVersionOut.model_validate(v) for v in versions]

    def reencrypt_all(self, batch_size: int = 500) -> ReencryptResult:
        """Move every stored ciphertext onto the current key.

        The secret's own ``version`` counter is left alone. Rows that cannot
        be opened (tampered, malformed, or sealed under a key the registry no
        longer holds) are skipped and reported in ``failed`` so the rest of
        the store still moves.
        """
        current_version = self.key_registry.current_version
        result = ReencryptResult()
        while True:
            rows = self.repository.select_not_under_key(
                current_version, limit=batch_size, exclude_ids=set(result.failed)
            )
            if not rows:
                break

            def _rewrite() -> tuple[int, list[UUID]]:
                count, failed = 0, []
                for row in rows:
                    stored = row.value_encrypted
                    try:
                        moved = self.key_registry.reencrypt_for_storage(stored)
                    except SecretError as e:
                        logger.error_ctx("Secret could not be re-encrypted", secret_id=str(row.id), error_code=e.code)
                        failed.append(row.id)
                        continue
                    if self.repository.update_ciphertext(row.id, stored, moved):
                        count += 1
                return count, failed

            count, failed = self.repository.run_in_transaction(_rewrite)
            result.rewritten += count
            result.failed.extend(failed)
            if count == 0 and not failed:
                break

        logger.info_ctx(
            "Secrets re-encrypted",
            key_version=current_version,
            rewritten=result.rewritten,
            failed=len(result.failed),
        )
        return result

    def _reveal(self, secret: SecretVersion, actor_id: str | None) -> tuple[SecretVersionOut, str]:
        plaintext = self.key_registry.decrypt_from_storage(secret.value_encrypted)
        metadata = SecretVersionOut.model_validate(secret)

        logger.info_ctx("Secret accessed", secret_id=str(secret.id), secret_name=secret.name, version=secret.version)
        self._emit(
            audit.SECRET_ACCESSED,
            secret,
            actor_id=actor_id,
            metadata={"secret_name": secret.name, "version": secret.version},
        )
        return metadata, plaintext

    def _emit(self, action: str, secret: SecretVersion, actor_id: str | None, metadata: dict) -> None:
        emit_safely(
            self.audit_emitter,
            AuditEvent(
                actor_id=actor_id or audit.SYSTEM_ACTOR,
                action=action,
                target_id=str(secret.id),
                project_id=str(secret.project_id),
                metadata=metadata,
            ),
        )


def get_key_registry(request: Request) -> KeyRegistry:
    return request.app.state.key_registry


def get_secret_lifecycle_service(
    db: Session = Depends(get_db),
    key_registry: KeyRegistry = Depends(get_key_registry),
) -> SecretLifecycleService:
    return SecretLifecycleService(
        repository=SecretVersionRepository(db),
        key_registry=key_registry,
        audit_emitter=LoggingAuditEmitter(),
    )
