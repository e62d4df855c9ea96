"""
Expiry Sweeper for secret versions.

Runs three passes, each written as conditional updates so any number of
replicas can sweep at the same time without a shared lock:

- grace warning: superseded versions whose grace period ends soon get one
  ``secret.grace_period_warning`` event
- grace expired: superseded versions past their grace period get one
  ``secret.grace_expired`` event
- hard delete: soft-deleted groups past their retention window are purged
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session, sessionmaker

from core.logging_config import LogContext, get_logger
from core.settings import settings
from repositories.secret_version_repository import DeletedGroup, SecretVersionRepository
from services import audit_emitter as audit
from services.audit_emitter import AuditEmitter, AuditEvent, emit_safely
from utils.clock import Clock, utcnow

logger = get_logger(__name__)

SWEEP_JOB_ID = "secret_expiry_sweep"
SWEEPER_ACTOR = "secret-expiry-sweeper"


@dataclass
class SweepResult:
    started_at: datetime
    warnings_sent: int = 0
    grace_expired_notified: int = 0
    purged_groups: int = 0
    purged_versions: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class ExpirySweeper:
    def __init__(
        self,
        session_factory: sessionmaker,
        audit_emitter: AuditEmitter | None = None,
        clock: Clock = utcnow,
        interval_minutes: int = settings.SECRET_SWEEPER_INTERVAL_MINUTES,
        warning_window: timedelta = timedelta(minutes=settings.SECRET_GRACE_WARNING_MINUTES),
    ):
        self.session_factory = session_factory
        self.audit_emitter = audit_emitter
        self.clock = clock
        self.interval_minutes = interval_minutes
        self.warning_window = warning_window

        self.scheduler = BackgroundScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 300
            }
        )
        self.scheduler.add_listener(self._job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error_listener, EVENT_JOB_ERROR)
        self._running = False

    def start(self):
        if self._running:
            logger.warning("ExpirySweeper is already running")
            return

        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=SWEEP_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info(f"ExpirySweeper started, sweeping every {self.interval_minutes} minutes")

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=True)
        self._running = False
        logger.info("ExpirySweeper stopped")

    def is_running(self) -> bool:
        return self._running and self.scheduler.running

    def run_once(self, now: datetime | None = None) -> SweepResult:
        """Run every pass once. Safe to call concurrently from many processes."""
        now = now or self.clock()
        result = SweepResult(started_at=now)

        with LogContext(sweep_id=uuid.uuid4().hex[:12]):
            session: Session = self.session_factory()
            try:
                repository = SecretVersionRepository(session)
                for name, sweep_pass in (
                    ("grace_warning", self._warn_grace_periods_ending),
                    ("grace_expired", self._notify_expired_grace_periods),
                    ("hard_delete", self._purge_deleted),
                ):
                    try:
                        sweep_pass(repository, now, result)
                    except Exception as e:
                        session.rollback()
                        result.errors.append(f"{name}: {e}")
                        logger.exception(f"Sweeper pass '{name}' failed")
            finally:
                session.close()

            logger.info_ctx(
                "Expiry sweep finished",
                warnings_sent=result.warnings_sent,
                grace_expired_notified=result.grace_expired_notified,
                purged_groups=result.purged_groups,
                purged_versions=result.purged_versions,
                errors=len(result.errors),
            )
        return result

    def _warn_grace_periods_ending(self, repository: SecretVersionRepository, now: datetime, result: SweepResult):
        for secret in repository.select_grace_periods_ending(now, self.warning_window):
            secret_id = secret.id
            event = AuditEvent(
                actor_id=SWEEPER_ACTOR,
                action=audit.SECRET_GRACE_PERIOD_WARNING,
                target_id=str(secret.id),
                project_id=str(secret.project_id),
                metadata={
                    "secret_name": secret.name,
                    "version": secret.version,
                    "expires_at": secret.grace_period_ends_at,
                    "minutes_until_expiration": int((secret.grace_period_ends_at - now).total_seconds() // 60),
                },
            )
            # Only the replica whose conditional update lands sends the warning
            if repository.run_in_transaction(lambda: repository.mark_grace_warning_sent(secret_id, now)):
                emit_safely(self.audit_emitter, event)
                result.warnings_sent += 1

    def _notify_expired_grace_periods(self, repository: SecretVersionRepository, now: datetime, result: SweepResult):
        for secret in repository.select_expired_grace_periods(now):
            secret_id = secret.id
            event = AuditEvent(
                actor_id=SWEEPER_ACTOR,
                action=audit.SECRET_GRACE_EXPIRED,
                target_id=str(secret.id),
                project_id=str(secret.project_id),
                metadata={
                    "secret_name": secret.name,
                    "version": secret.version,
                    "grace_period_ends_at": secret.grace_period_ends_at,
                },
            )
            if repository.run_in_transaction(lambda: repository.mark_grace_notified(secret_id, now)):
                emit_safely(self.audit_emitter, event)
                result.grace_expired_notified += 1

    def _purge_deleted(self, repository: SecretVersionRepository, now: datetime, result: SweepResult):
        for group in repository.select_hard_delete_candidates(now):
            purged = repository.run_in_transaction(lambda: repository.purge(group, now))
            if not purged:
                # Another replica got there first
                continue

            result.purged_groups += 1
            result.purged_versions += purged
            logger.info_ctx(
                "Secret purged",
                project_id=str(group.project_id),
                secret_name=group.name,
                versions_purged=purged,
                deleted_at=group.deleted_at.isoformat(),
            )
            emit_safely(self.audit_emitter, purge_event(group, purged))

    def _job_executed_listener(self, event):
        logger.debug(f"Sweep job {event.job_id} executed")

    def _job_error_listener(self, event):
        logger.error(f"Sweep job {event.job_id} failed: {event.exception}")


def purge_event(group: DeletedGroup, purged: int) -> AuditEvent:
    return AuditEvent(
        actor_id=SWEEPER_ACTOR,
        action=audit.SECRET_PURGED,
        target_id=group.name,
        project_id=str(group.project_id),
        metadata={
            "secret_name": group.name,
            "versions_purged": purged,
            "deleted_at": group.deleted_at,
        },
    )
