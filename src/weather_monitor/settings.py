import typing

from pydantic import Field, SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application configuration using Pydantic Settings.
    Reads from environment variables and an optional .env file.
    """

    # Application Config
    service_name: str = "weather-monitor"
    log_level: str = "INFO"
    log_dir: str = "/var/log/weather-monitor"
    api_host: str = "0.0.0.0"
    api_port: int = 3001

    # Database Config
    postgres_user: str = "weather"
    postgres_password: SecretStr = SecretStr("weather")
    postgres_db: str = "weather"
    postgres_host: str = "db"
    postgres_port: int = 5432
    postgres_pool_size: int = Field(default=20, ge=1)
    database_url_override: str | None = Field(
        default=None, description="Full SQLAlchemy URL, wins over the postgres_* fields"
    )
    db_create_tables: bool = True

    # Redis Config
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: SecretStr | None = None
    redis_socket_timeout: float = Field(default=5.0, gt=0)
    cache_ttl: int = Field(default=300, ge=0, description="Default TTL in seconds")

    # OpenWeather Config
    openweather_api_key: SecretStr = SecretStr("")
    openweather_base_url: str = "https://api.openweathermap.org/data/2.5"
    openweather_timeout: float = Field(default=10.0, gt=0)
    openweather_language: str = "en"
    provider_rate_limit_per_minute: int = Field(default=60, ge=1)
    provider_cache_ttl: int = Field(default=600, ge=0)

    # Alert Delivery Config
    alert_email_from: str = "noreply@weather-monitor.local"
    alert_email_host: str | None = None
    alert_email_port: int = 587
    alert_email_user: str | None = None
    alert_email_password: SecretStr | None = None
    webhook_timeout: float = Field(default=5.0, gt=0)
    webhook_retry_attempts: int = Field(default=3, ge=1)

    # Collection Config
    collection_interval_minutes: int = Field(default=15, ge=1)
    collection_initial_delay: float = Field(default=30.0, ge=0)
    collection_city_delay: float = Field(default=1.0, ge=0)
    retention_days: int = Field(default=30, ge=1)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        password = self.postgres_password.get_secret_value()
        return f"postgresql+asyncpg://{self.postgres_user}:{password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    @property
    def email_configured(self) -> bool:
        return bool(self.alert_email_host and self.alert_email_from)

    def redacted(self) -> dict[str, typing.Any]:
        """Settings as a dict that is safe to log."""
        data = self.model_dump(exclude={"database_url"})
        for key, value in data.items():
            if isinstance(value, SecretStr):
                data[key] = "[REDACTED]" if value.get_secret_value() else None
        return data


# Global settings instance
settings = Settings()
