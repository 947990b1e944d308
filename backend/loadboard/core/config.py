"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    log_level: str = "INFO"
    log_json: bool = False
    lifecycle_db_path: str = "./data/lifecycle.db"
    timeline_retention: int = 5000
    idempotency_retention: int = 10000

    # Actor resolution
    auth_enabled: bool = False
    actor_tokens: str = ""

    # Approval pipeline
    auto_markup_percent: float = 5.0

    # Geocoding (OpenStreetMap Nominatim)
    geocoding_enabled: bool = True
    geocoding_base_url: str = "https://nominatim.openstreetmap.org/search"
    geocoding_user_agent: str = "vpower-loadboard/1.0"
    geocoding_timeout_seconds: float = 10.0

    # Outbound e-mail
    email_enabled: bool = False
    smtp_server: str = "smtp.sendgrid.net"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    email_from: str = "it@vpower-logistics.com"
    email_from_name: str = "V Power Logistics"

    def smtp_configured(self) -> bool:
        return bool((self.smtp_server or "").strip()) and int(self.smtp_port or 0) > 0

    def markup_multiplier(self) -> float:
        percent = float(self.auto_markup_percent or 0.0)
        return 1.0 + max(0.0, percent) / 100.0


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
