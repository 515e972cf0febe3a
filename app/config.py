from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/computed_properties"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # Warn on statements slower than this
    SLOW_QUERY_THRESHOLD_MS: int = 500

    # CORS
    FRONTEND_URL: str = "http://localhost:3000"

    # Computed properties
    COMPUTE_PROPERTIES_INTERVAL_SECONDS: int = 10
    COMPUTE_PROPERTIES_SCHEDULER_ENABLED: bool = True
    ASSIGNMENT_SNAPSHOT_BATCH_SIZE: int = 500
    # Each run rescans events ingested this long before the last period end,
    # so rows stamped before a period closed but committed after it are seen
    COMPUTE_PROPERTIES_INGEST_LAG_SECONDS: int = 5

    # Brevo SMS
    BREVO_API_KEY: str | None = None
    BREVO_SENDER: str | None = None

    # WhatsApp Cloud
    WHATSAPP_ACCESS_TOKEN: str | None = None
    WHATSAPP_PHONE_NUMBER_ID: str | None = None

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    DOCS_ENABLED: bool = True

    @model_validator(mode='after')
    def enforce_production_defaults(self) -> "Settings":
        """Never run production with debug output or SQL echo."""
        if self.is_production:
            self.DEBUG = False
        if self.COMPUTE_PROPERTIES_INTERVAL_SECONDS < 1:
            raise ValueError("COMPUTE_PROPERTIES_INTERVAL_SECONDS must be at least 1")
        if self.ASSIGNMENT_SNAPSHOT_BATCH_SIZE < 1:
            raise ValueError("ASSIGNMENT_SNAPSHOT_BATCH_SIZE must be at least 1")
        if self.COMPUTE_PROPERTIES_INGEST_LAG_SECONDS < 0:
            raise ValueError("COMPUTE_PROPERTIES_INGEST_LAG_SECONDS must not be negative")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT in ("production", "staging")

    @property
    def sqlalchemy_echo(self) -> bool:
        # SECURITY: echo prints bound parameters, keep it off outside development
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
