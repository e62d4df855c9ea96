from datetime import datetime
from typing import Protocol, Union
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from core.logging_config import get_logger

logger = get_logger(__name__)
audit_logger = get_logger("audit")

SECRET_CREATED = "secret.created"
SECRET_ACCESSED = "secret.accessed"
SECRET_ROTATED = "secret.rotated"
SECRET_DELETED = "secret.deleted"
SECRET_GRACE_PERIOD_WARNING = "secret.grace_period_warning"
SECRET_GRACE_EXPIRED = "secret.grace_expired"
SECRET_PURGED = "secret.purged"

SYSTEM_ACTOR = "system"

# Metadata never carries values, only references
FORBIDDEN_METADATA_KEYS = {"value", "plaintext", "secret_value", "value_encrypted", "ciphertext", "password", "token"}

MetadataValue = Union[str, int, bool, None, datetime, UUID]


class AuditEvent(BaseModel):
    actor_id: str = SYSTEM_ACTOR
    action: str
    target_id: str
    project_id: str
    metadata: dict[str, MetadataValue] = Field(default_factory=dict)

    @field_validator("metadata")
    @classmethod
    def no_values_in_metadata(cls, metadata: dict) -> dict:
        leaked = FORBIDDEN_METADATA_KEYS.intersection(k.lower() for k in metadata)
        if leaked:
            raise ValueError(f"Audit metadata may not contain {sorted(leaked)}")
        return metadata


class AuditEmitter(Protocol):
    def record(self, event: AuditEvent) -> None:
        ...


class LoggingAuditEmitter:
    """Default emitter, writes events to the ``audit`` logger."""

    def record(self, event: AuditEvent) -> None:
        audit_logger.info_ctx(
            f"{event.actor_id} -> {event.action} on secret:{event.target_id}",
            action=event.action,
            actor_id=event.actor_id,
            target_id=event.target_id,
            project_id=event.project_id,
            metadata=event.model_dump(mode="json")["metadata"],
        )


def emit_safely(emitter: AuditEmitter | None, event: AuditEvent) -> bool:
    """Record ``event`` without ever failing the caller."""
    if emitter is None:
        return False
    try:
        emitter.record(event)
        return True
    except Exception as e:
        logger.error_ctx(
            "Failed to record audit event",
            action=event.action,
            target_id=event.target_id,
            error=str(e),
        )
        return False
