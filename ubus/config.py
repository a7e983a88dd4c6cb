import logging
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings, read from UBUS_* environment variables or .env."""

    model_config = SettingsConfigDict(env_prefix="UBUS_", env_file=".env", extra="ignore")

    app_name: str = "UBus College Bus Tracking API"

    # Tokens
    secret_key: str = "super-secret-key"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Storage
    data_dir: Path = Path(__file__).parent / "data"

    # Location publishing
    publish_interval_seconds: float = Field(default=10.0, gt=0)
    simulated_publish_interval_seconds: float = Field(default=5.0, gt=0)
    geolocation_timeout_ms: int = Field(default=10000, gt=0)
    simulate_location: bool = False
    default_center_lat: float = 30.6837
    default_center_lng: float = 76.7308

    # Admin accounts are provisioned out-of-band, never through signup
    admin_email: str = "admin@ubus.edu"
    admin_password: str = "adminpass"
    admin_name: str = "Administrator"

    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    cors_origins: List[str] = ["*"]

    @property
    def effective_publish_interval(self) -> float:
        if self.simulate_location:
            return self.simulated_publish_interval_seconds
        return self.publish_interval_seconds


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
    )
