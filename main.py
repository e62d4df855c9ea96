from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import JSONResponse

# Setup logging
from core.logging_config import setup_logging, get_logger
setup_logging()
logger = get_logger(__name__)

# Setup Sentry error tracking
from core.settings import settings
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from core.errors import SecretError
from services.audit_emitter import LoggingAuditEmitter
from services.expiry_sweeper import ExpirySweeper
from services.key_registry import KeyRegistry

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        attach_stacktrace=True,
        send_default_pii=False,
        before_send=lambda event, hint: filter_sentry_event(event, hint),
        auto_enabling_integrations=False,
    )
    logger.info_ctx("Sentry error tracking enabled", environment=settings.SENTRY_ENVIRONMENT)


def filter_sentry_event(event, hint):
    """Filter events before sending to Sentry"""
    if "transaction" in event and "/health" in event["transaction"]:
        return None

    # Local variables of the secrets code may hold plaintext
    for exception in event.get("exception", {}).get("values", []):
        for frame in exception.get("stacktrace", {}).get("frames", []):
            frame.pop("vars", None)

    return event


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Secrets engine starting up")

    # Key material is resolved once and shared for the process lifetime
    app.state.key_registry = KeyRegistry.from_settings(settings)

    sweeper = None
    if settings.SECRET_SWEEPER_ENABLED:
        from db.session import SessionLocal

        sweeper = ExpirySweeper(SessionLocal, audit_emitter=LoggingAuditEmitter())
        sweeper.start()
    app.state.sweeper = sweeper

    yield

    if sweeper is not None:
        sweeper.stop()
    logger.info("Secrets engine shut down")


app = FastAPI(lifespan=lifespan)


@app.exception_handler(SecretError)
async def secret_error_handler(request, exc: SecretError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": {"code": exc.code, "message": exc.message}},
    )


@app.get("/health")
def health():
    sweeper = getattr(app.state, "sweeper", None)
    key_registry = getattr(app.state, "key_registry", None)
    return {
        "status": "ok",
        "key_version": key_registry.current_version if key_registry else None,
        "sweeper_running": bool(sweeper and sweeper.is_running()),
    }
