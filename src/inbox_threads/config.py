from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "dev"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    database_path: str = ".data/inbox_threads.db"

    mail_domain: str = "example.org"
    support_mailbox: str = "support@example.org"
    inbound_webhook_secret: str = ""

    generation_endpoint_url: str = "http://localhost:8888/api/generate-reply"
    generation_timeout_seconds: float = 60.0
    draft_session_limit: int = 256

    display_name_min_length: int = 2
    reserved_display_names: tuple[str, ...] = (
        "admin",
        "administrator",
        "support",
        "user",
        "customer",
        "help",
        "service",
    )

    log_level: str = "INFO"
    api_retry_max_attempts: int = 3
    api_retry_base_delay_seconds: float = 1.0
    api_retry_max_delay_seconds: float = 8.0

    notification_webhook_url: str = ""

    @property
    def database_file(self) -> Path:
        return Path(self.database_path)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
