"""Settings for the gateway, read from the environment and ``.env``."""

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SYMMETRIC_JWT_ALGORITHMS: frozenset[str] = frozenset({"HS256", "HS384", "HS512"})


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class CounterBackend(StrEnum):
    REDIS = "redis"
    MEMORY = "memory"


class Settings(BaseSettings):
    """Gateway settings.

    Secrets are SecretStr so they never render in reprs or logs. Every
    field maps to the upper-cased environment variable of the same name.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "DEBUG"
    port: int = 8080

    # --- Token verification ---
    jwt_secret: SecretStr = SecretStr("change-me-in-production-please-32b")
    jwt_algorithm: str = "HS256"
    jwt_leeway_seconds: int = Field(default=0, ge=0)

    # --- Rate limiting ---
    counter_backend: CounterBackend = CounterBackend.REDIS
    redis_url: str = "redis://localhost:6379/0"
    counter_store_timeout: float = Field(default=0.5, gt=0)
    rate_limit_window_seconds: int = Field(default=60, gt=0)
    rate_limit_threshold: int = Field(default=100, gt=0)
    # Fail-closed unless explicitly switched: a store outage returns 503.
    rate_limit_fail_open: bool = False
    protected_path_prefix: str = "/api/"

    # --- PostgreSQL ---
    postgres_user: str = "tenant_gate"
    postgres_password: SecretStr = SecretStr("secret")
    postgres_db: str = "tenant_gate"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @field_validator("jwt_algorithm")
    @classmethod
    def _require_symmetric_algorithm(cls, value: str) -> str:
        if value not in SYMMETRIC_JWT_ALGORITHMS:
            allowed = ", ".join(sorted(SYMMETRIC_JWT_ALGORITHMS))
            raise ValueError(f"jwt_algorithm must be one of: {allowed}")
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """SQLAlchemy URL for the psycopg v3 driver (sync and async engines)."""
        password = self.postgres_password.get_secret_value()
        return (
            f"postgresql+psycopg://{self.postgres_user}:{password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Convenience properties ---
    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, built once on first use."""
    return Settings()


settings = get_settings()
