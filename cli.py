import typer

from typer import Option

from core.logging_config import setup_logging
from services.cipher import generate_key

app = typer.Typer()


@app.command()
def generate_master_key():
    """Print a fresh hex encoded 32 byte key for SECRETS_MASTER_KEY."""
    typer.echo(generate_key())


@app.command()
def sweep():
    """Run one expiry sweep pass against the configured database."""
    from db.session import SessionLocal
    from services.audit_emitter import LoggingAuditEmitter
    from services.expiry_sweeper import ExpirySweeper

    setup_logging()
    result = ExpirySweeper(SessionLocal, audit_emitter=LoggingAuditEmitter()).run_once()
    typer.echo(
        f"warnings_sent={result.warnings_sent} "
        f"grace_expired_notified={result.grace_expired_notified} "
        f"purged_groups={result.purged_groups} "
        f"purged_versions={result.purged_versions}"
    )
    if not result.success:
        for error in result.errors:
            typer.echo(error, err=True)
        raise typer.Exit(code=1)


@app.command()
def reencrypt(batch_size: int = Option(500, "--batch-size")):
    """Re-encrypt every stored secret under the current master key."""
    from core.settings import settings
    from db.session import db_context
    from repositories.secret_version_repository import SecretVersionRepository
    from services.key_registry import KeyRegistry
    from services.secret_lifecycle_service import SecretLifecycleService

    setup_logging()
    key_registry = KeyRegistry.from_settings(settings)

    with db_context() as db:
        service = SecretLifecycleService(SecretVersionRepository(db), key_registry)
        result = service.reencrypt_all(batch_size=batch_size)

    typer.echo(f"Re-encrypted {result.rewritten} secret versions under key version {key_registry.current_version}")
    if not result.success:
        for secret_id in result.failed:
            typer.echo(f"Could not re-encrypt secret version {secret_id}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
