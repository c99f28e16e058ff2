# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Configuration for DonorGate Server."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables. Read once at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    app_base_url: str = "http://localhost:8080"
    log_level: str = "INFO"
    # Comma-separated origins allowed to call the API with credentials; empty disables CORS
    cors_origins: str = ""

    # Data directory holds the SQLite file and admin-credentials.json
    data_dir: Path = Path("data")
    # Leave unset to use sqlite+aiosqlite:///<data_dir>/donorgate.db
    database_url: str | None = None

    # Sessions (signed cookies)
    session_secret: str = "change-me-in-production"
    session_cookie_secure: bool = False
    jwt_algorithm: str = "HS256"
    session_expire_minutes: int = 10080  # 7 days

    # Seed username for the first-run admin credentials file
    admin_username: str = "admin"

    # Outbound adapter deadline (seconds)
    adapter_timeout_seconds: float = 10.0
    # How long shutdown waits for an in-flight sweep tick
    shutdown_timeout_seconds: float = 30.0

    # Background sweeps
    sweepers_enabled: bool = True
    access_expiration_interval_seconds: float = 300
    subscription_refresh_interval_seconds: float = 300
    trial_reminder_interval_seconds: float = 1800
    subscription_refresh_max_age_minutes: int = 60

    @property
    def effective_database_url(self) -> str:
        """Database URL, defaulting to a SQLite file in the data directory."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{(self.data_dir / 'donorgate.db').as_posix()}"

    @property
    def admin_credentials_path(self) -> Path:
        return self.data_dir / "admin-credentials.json"


settings = Settings()
