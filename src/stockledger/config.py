"""Configuration settings for the application."""

from urllib.parse import quote

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET_KEY = "dev-secret-key-change-in-production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_db: str = "stockledger"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # Application settings
    debug: bool = False
    environment: str = Field("development", validation_alias=AliasChoices("env", "environment"))

    # Access tokens; JWT_SECRET_KEY wins over SECRET_KEY
    jwt_secret_key: str = Field(DEFAULT_SECRET_KEY, validation_alias=AliasChoices("jwt_secret_key", "secret_key"))
    access_token_expire_minutes: int = 60

    # Unit names treated as whole-number when no row exists in the units table
    whole_number_units: list[str] = ["Pieces"]

    # Comma-separated list of allowed CORS origins
    cors_origins: str = "http://localhost:8080,http://127.0.0.1:8080"

    @property
    def database_url(self) -> str:
        """Construct the database URL for async PostgreSQL connection."""
        base_url = (
            f"postgresql+asyncpg://{quote(self.postgres_user, safe='')}:{quote(self.postgres_password, safe='')}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )
        # Add SSL for Azure PostgreSQL
        if "azure" in self.postgres_host.lower() or "postgres.database" in self.postgres_host.lower():
            return f"{base_url}?ssl=require"
        return base_url

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in ("production", "prod")

    @property
    def allowed_origins(self) -> list[str]:
        """Split the configured CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def is_whole_number_unit(self, unit: str) -> bool:
        """Return True if the unit name is configured as whole-number only."""
        wanted = unit.strip().lower()
        return any(wanted == name.strip().lower() for name in self.whole_number_units)


# Global settings instance
settings = Settings()
