# appointments/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/appointments.db"
    redis_url: str = "redis://localhost:6379/0"

    # OAuth clients
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""

    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_redirect_uri: str = ""

    # Teams shares the Graph API; empty values fall back to the Microsoft app
    teams_client_id: str = ""
    teams_client_secret: str = ""
    teams_redirect_uri: str = ""

    apple_caldav_url: str = "https://caldav.icloud.com"

    http_timeout_seconds: float = 15.0

    # Token lifecycle
    token_refresh_threshold_minutes: int = 5
    token_maintenance_horizon_hours: int = 24

    # Sync
    sync_window_days: int = 30
    backfill_days_back: int = 30
    backfill_days_ahead: int = 180
    backfill_chunk_days: int = 30
    sync_concurrency: int = 4
    lookup_freshness_seconds: int = 120

    # Slots
    slot_step_minutes: int = 15

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            return f"sqlite:///{absolute_path}"
        return url

    @property
    def teams_credentials(self) -> tuple[str, str, str]:
        return (
            self.teams_client_id or self.microsoft_client_id,
            self.teams_client_secret or self.microsoft_client_secret,
            self.teams_redirect_uri or self.microsoft_redirect_uri,
        )


settings = Settings()
