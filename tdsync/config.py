"""Configuration management for TimeDoctor Sync."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "TimeDoctorSettings",
    "TokenSettings",
    "SyncSettings",
    "setup_logging",
    "DEFAULT_API_URL",
    "MAX_PAGINATION_LIMIT",
]

logger = logging.getLogger(__name__)

APP_NAME = "TimeDoctor Sync"
APP_AUTHOR = "Workforce"

# API endpoints
DEFAULT_API_URL = "https://webapi.timedoctor.com/v1.1"
DEFAULT_AUTH_URL = "https://webapi.timedoctor.com/oauth/v2/auth"
DEFAULT_TOKEN_URL = "https://webapi.timedoctor.com/oauth/v2/token"

# Token lifecycle: 6-day tokens refreshed 3 days before expiry
TOKEN_LIFESPAN_SECONDS = 6 * 24 * 3600
DEFAULT_EXPIRY_BUFFER_SECONDS = 259200
DEFAULT_MAX_REFRESH_RETRIES = 3
DEFAULT_REFRESH_RETRY_DELAY = 5  # seconds

# Sync settings
DEFAULT_SYNC_INTERVAL = 3600  # seconds
DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_DATE_RANGE_DAYS = 31
DEFAULT_PAGINATION_LIMIT = 250
MAX_PAGINATION_LIMIT = 250


@dataclass
class TimeDoctorSettings:
    """Provider connection settings."""

    api_url: str = DEFAULT_API_URL
    auth_url: str = DEFAULT_AUTH_URL
    token_url: str = DEFAULT_TOKEN_URL
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    timeout: int = 30


@dataclass
class TokenSettings:
    """Token refresh configuration."""

    token_expiry_buffer_seconds: Optional[int] = DEFAULT_EXPIRY_BUFFER_SECONDS
    token_expiry_buffer_hours: Optional[int] = None  # legacy, seconds wins
    max_refresh_retries: int = DEFAULT_MAX_REFRESH_RETRIES
    refresh_retry_delay: float = DEFAULT_REFRESH_RETRY_DELAY
    lifespan_seconds: int = TOKEN_LIFESPAN_SECONDS

    def __post_init__(self) -> None:
        self.max_refresh_retries = max(0, self.max_refresh_retries)
        self.refresh_retry_delay = max(0.0, self.refresh_retry_delay)

    @property
    def expiry_buffer_seconds(self) -> int:
        """Effective refresh buffer.

        The seconds value is authoritative; the hours value is only used
        when no seconds value is configured.
        """
        if self.token_expiry_buffer_seconds is not None:
            return int(self.token_expiry_buffer_seconds)
        if self.token_expiry_buffer_hours is not None:
            return int(self.token_expiry_buffer_hours) * 3600
        return DEFAULT_EXPIRY_BUFFER_SECONDS


@dataclass
class SyncSettings:
    """Sync configuration."""

    interval_seconds: int = DEFAULT_SYNC_INTERVAL
    batch_size: int = DEFAULT_BATCH_SIZE
    max_date_range_days: int = DEFAULT_MAX_DATE_RANGE_DAYS
    pagination_limit: int = DEFAULT_PAGINATION_LIMIT
    default_lookback_days: int = 1
    skip_synced_windows: bool = False
    max_workers: int = 1

    def __post_init__(self) -> None:
        self.batch_size = max(1, self.batch_size)
        self.pagination_limit = min(max(1, self.pagination_limit), MAX_PAGINATION_LIMIT)
        self.max_date_range_days = max(1, self.max_date_range_days)
        self.max_workers = max(1, self.max_workers)


@dataclass
class Config:
    """Main configuration object."""

    timedoctor: TimeDoctorSettings = field(default_factory=TimeDoctorSettings)
    token: TokenSettings = field(default_factory=TokenSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite store and ledger)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls) -> "Config":
        """Load config from file (or defaults), then apply env overrides."""
        config = cls()
        config_file = cls.get_config_file()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                config = cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        config.apply_env(os.environ)
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        td_data = data.pop("timedoctor", {})
        token_data = data.pop("token", {})
        sync_data = data.pop("sync", {})

        return cls(
            timedoctor=TimeDoctorSettings(**td_data) if td_data else TimeDoctorSettings(),
            token=TokenSettings(**token_data) if token_data else TokenSettings(),
            sync=SyncSettings(**sync_data) if sync_data else SyncSettings(),
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def apply_env(self, env) -> None:
        """Apply TIMEDOCTOR_* environment overrides."""
        td = self.timedoctor
        td.client_id = env.get("TIMEDOCTOR_V1_CLIENT_ID", td.client_id)
        td.client_secret = env.get("TIMEDOCTOR_V1_CLIENT_SECRET", td.client_secret)
        td.redirect_uri = env.get("TIMEDOCTOR_V1_REDIRECT_URI", td.redirect_uri)
        td.api_url = env.get("TIMEDOCTOR_V1_BASE_URL", td.api_url)

        if "TIMEDOCTOR_TOKEN_EXPIRY_BUFFER" in env:
            self.token.token_expiry_buffer_seconds = int(env["TIMEDOCTOR_TOKEN_EXPIRY_BUFFER"])
        if "TIMEDOCTOR_TOKEN_EXPIRY_BUFFER_HOURS" in env:
            hours = int(env["TIMEDOCTOR_TOKEN_EXPIRY_BUFFER_HOURS"])
            self.token.token_expiry_buffer_hours = hours
            seconds = self.token.token_expiry_buffer_seconds
            if seconds is not None and seconds != hours * 3600:
                logger.warning(
                    f"Token expiry buffer set to {seconds}s and {hours}h; "
                    "using the seconds value"
                )
        if "TIMEDOCTOR_MAX_REFRESH_RETRIES" in env:
            self.token.max_refresh_retries = max(0, int(env["TIMEDOCTOR_MAX_REFRESH_RETRIES"]))
        if "TIMEDOCTOR_REFRESH_RETRY_DELAY" in env:
            self.token.refresh_retry_delay = max(
                0.0, float(env["TIMEDOCTOR_REFRESH_RETRY_DELAY"])
            )

    def save(self) -> None:
        """Save config to file. Client secrets are not written."""
        config_file = self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        data["timedoctor"].pop("client_secret", None)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "tdsync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
