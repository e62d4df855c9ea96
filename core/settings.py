from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_NAME: str = "control_plane"
    DATABASE_USER: str = "control_plane"
    DATABASE_PASSWORD: str = ""
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432

    # Full URL override (sqlite in tests, pgbouncer in some deployments)
    SQLALCHEMY_DATABASE_URL: str | None = None

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLALCHEMY_DATABASE_URL:
            return self.SQLALCHEMY_DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.DATABASE_USER}:"
            f"{self.DATABASE_PASSWORD}@{self.DATABASE_HOST}:"
            f"{self.DATABASE_PORT}/{self.DATABASE_NAME}"
        )

    # Encryption Configuration
    # Hex-encoded 32 byte master key. Generate with: openssl rand -hex 32
    SECRETS_MASTER_KEY: str | None = None
    SECRETS_MASTER_KEY_VERSION: int = 1
    # Retired keys kept for decrypt-only use, "1:<hex>,2:<hex>"
    SECRETS_RETIRED_KEYS: str | None = None

    # Secret lifecycle
    SECRET_GRACE_PERIOD_HOURS: int = 24
    SECRET_HARD_DELETE_AFTER_DAYS: int = 30
    SECRET_GRACE_WARNING_MINUTES: int = 60

    # Expiry sweeper
    SECRET_SWEEPER_ENABLED: bool = True
    SECRET_SWEEPER_INTERVAL_MINUTES: int = 5

    # Transaction retries (deadlocks, lock timeouts)
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_MIN_WAIT: float = 0.1
    DB_RETRY_MAX_WAIT: float = 2.0

    DEBUG: bool = False

    # Sentry error tracking
    SENTRY_DSN: str | None = None
    SENTRY_ENVIRONMENT: str = "development"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
