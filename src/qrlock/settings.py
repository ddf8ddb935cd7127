import json
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from qrlock.utils.paths import get_default_data_dir, get_default_log_dir


class Settings(BaseSettings):
    """Application-wide settings managed via .env and config.json."""

    app_name: str = "qrlock"
    debug: bool = Field(default=False, description="Master toggle for verbose logging")

    # Paths
    data_dir: Path = Field(default_factory=get_default_data_dir)
    log_dir: Path = Field(default_factory=get_default_log_dir)

    # Token protocol
    database_url: str | None = None
    token_secret: SecretStr | None = None
    window_utc_offset_hours: int = 9
    window_lead_minutes: int = 10

    # Authoritative schedule source
    api_base_url: str = "http://localhost:8000"
    api_token: SecretStr | None = None
    identity: str | None = None
    device_uuid: str | None = None
    fetch_timeout_seconds: float = 10.0

    # Reconciliation
    keep_schedules_on_fetch_failure: bool = True
    suppress_duplicate_names: bool = True
    reconcile_interval_seconds: int = 60

    # Enforcement defaults
    notify_lead_minutes: int = 5
    prevent_removal: bool = False
    MAX_LOCKOUT_MINUTES: int = 240

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="QRLOCK_",
        extra="ignore",
    )

    def model_post_init(self, __context):
        # Ensure paths are absolute
        self.data_dir = self.data_dir.resolve()
        self.log_dir = self.log_dir.resolve()

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def command_file(self) -> Path:
        return self.data_dir / "command.json"

    @property
    def icon_path(self) -> str:
        return str(Path(__file__).resolve().parent / "resources" / "icon.png")

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'qrlock.db'}"

    def save(self):
        """Saves current settings to config.json in data_dir.

        Secrets are never written back; they stay in the environment.
        """
        config_path = self.data_dir / "config.json"
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json", exclude={"token_secret", "api_token"})
        with open(config_path, "w") as f:
            json.dump(data, f, indent=4)


_last_settings_mtime: float | None = None
_cached_settings: Settings | None = None


def load_settings() -> Settings:
    """Loads settings, merging with config.json if it exists."""
    global _last_settings_mtime, _cached_settings

    initial = Settings()
    config_path = initial.data_dir / "config.json"

    if not config_path.exists():
        _last_settings_mtime = None
        _cached_settings = initial
        return initial

    current_mtime = config_path.stat().st_mtime
    if _last_settings_mtime == current_mtime and _cached_settings is not None:
        return _cached_settings

    try:
        with open(config_path) as f:
            config_data = json.load(f)
        merged = initial.model_dump()
        merged.update(config_data)
        _cached_settings = Settings(**merged)
        _last_settings_mtime = current_mtime
        return _cached_settings
    except Exception:
        _cached_settings = initial
        return initial


# The single source of truth for the app
settings = load_settings()
