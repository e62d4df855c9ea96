from datetime import timedelta
import pytest

from core.errors import NotActiveError, NotFoundError
from services import audit_emitter as audit
from services.expiry_sweeper import ExpirySweeper
from services.secret_lifecycle_service import SecretLifecycleService


@pytest.mark.integration
class TestSecretLifecycleFlow:

    def test_full_lifecycle(
        self,
        lifecycle_service: SecretLifecycleService,
        sweeper: ExpirySweeper,
        repository,
        audit_emitter,
        project_id,
        clock,
    ):
        """Create, rotate, expire, delete and purge one secret end to end."""
        created_at = clock.now
        v1 = lifecycle_service.create(project_id, "db-pass", "hunter2", created_by="user-1")
        v1_id = v1.id

        # Rotate one hour later
        clock.advance(hours=1)
        rotation = lifecycle_service.rotate(v1_id, "hunter3", reason="scheduled", actor_id="user-1")
        v2_id = rotation.secret.id
        assert rotation.grace_period_ends_at == created_at + timedelta(hours=25)

        # Both versions readable during the grace period
        assert lifecycle_service.get(v1_id)[1] == "hunter2"
        assert lifecycle_service.get(v2_id)[1] == "hunter3"

        # A second rotation of the superseded version is refused
        with pytest.raises(NotActiveError):
            lifecycle_service.rotate(v1_id, "hunter4")

        # Sweeper notices the grace period ending, then ended
        clock.advance(hours=23, minutes=30)
        assert sweeper.run_once().warnings_sent == 1
        clock.advance(minutes=30)
        assert sweeper.run_once().grace_expired_notified == 1
        assert sweeper.run_once().grace_expired_notified == 0

        # Delete through the current version, every version goes at once
        deleted = lifecycle_service.soft_delete(v2_id, actor_id="user-1")
        assert deleted.versions_deleted == 2
        assert deleted.hard_delete_scheduled_at == clock.now + timedelta(days=30)
        with pytest.raises(NotFoundError):
            lifecycle_service.get(v1_id)

        # Retention not over yet
        clock.advance(days=29)
        assert sweeper.run_once().purged_groups == 0
        assert len(repository.select_all_versions_by_name(project_id, "db-pass", include_deleted=True)) == 2

        clock.advance(days=1)
        result = sweeper.run_once()
        assert result.purged_groups == 1
        assert result.purged_versions == 2
        assert repository.select_by_id(v1_id, include_deleted=True) is None
        assert repository.select_by_id(v2_id, include_deleted=True) is None

        assert audit_emitter.actions() == [
            audit.SECRET_CREATED,
            audit.SECRET_ROTATED,
            audit.SECRET_ACCESSED,
            audit.SECRET_ACCESSED,
            audit.SECRET_GRACE_PERIOD_WARNING,
            audit.SECRET_GRACE_EXPIRED,
            audit.SECRET_DELETED,
            audit.SECRET_PURGED,
        ]
        for event in audit_emitter.events:
            assert "hunter" not in str(event.metadata)
