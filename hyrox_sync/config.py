"""Configuration management for Hyrox Sync."""

import json
import logging
import uuid
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "PeerSettings",
    "CloudSettings",
    "SyncSettings",
    "SessionSettings",
    "GoalSettings",
    "setup_logging",
    "DEFAULT_CLOUD_URL",
    "DEFAULT_RESEND_WINDOW",
    "MAX_OUTBOX_SIZE",
]

logger = logging.getLogger(__name__)

APP_NAME = "Hyrox Sync"
APP_AUTHOR = "VDL Creation"

# Endpoints
DEFAULT_CLOUD_URL = "http://127.0.0.1:8080/api/v1"
DEFAULT_PEER_URL = "http://127.0.0.1:8765"

# Companion transport
DEFAULT_PEER_TIMEOUT = 10  # seconds
MAX_OUTBOX_SIZE = 10000
DEFAULT_OUTBOX_RETRIES = 20

# Sync settings
DEFAULT_RESEND_WINDOW = 5.0  # seconds
DEFAULT_PUSH_INTERVAL = 30  # seconds
DEFAULT_CLOUD_DRAIN_INTERVAL = 300  # seconds

# Standard station target times, in seconds
DEFAULT_GOALS = {
    "SkiErg": 180.0,
    "Sled Push": 240.0,
    "Sled Pull": 240.0,
    "Burpees Broad Jump": 300.0,
    "RowErg": 180.0,
    "Farmers Carry": 240.0,
    "Sandbag Lunges": 300.0,
    "Wall Balls": 210.0,
}


@dataclass
class PeerSettings:
    """Companion device transport settings."""

    url: str = DEFAULT_PEER_URL
    timeout_seconds: int = DEFAULT_PEER_TIMEOUT
    outbox_max_size: int = MAX_OUTBOX_SIZE
    outbox_max_retries: int = DEFAULT_OUTBOX_RETRIES


@dataclass
class CloudSettings:
    """Cloud document store settings."""

    api_url: str = DEFAULT_CLOUD_URL
    user_id: Optional[str] = None
    workouts_collection: str = "workouts"
    templates_collection: str = "templates"
    poll_interval_seconds: int = 15
    network_probe_host: str = "127.0.0.1"
    network_probe_port: int = 8080
    network_probe_interval_seconds: int = 5
    update_statistics: bool = True


@dataclass
class SyncSettings:
    """Sync engine tuning."""

    resend_window_seconds: float = DEFAULT_RESEND_WINDOW
    push_interval_seconds: int = DEFAULT_PUSH_INTERVAL
    cloud_drain_interval_seconds: int = DEFAULT_CLOUD_DRAIN_INTERVAL
    recent_workouts_hours: int = 24


@dataclass
class SessionSettings:
    """Live workout session schedules."""

    tick_interval_seconds: float = 0.1
    sample_interval_seconds: float = 5.0


@dataclass
class GoalSettings:
    """Per-exercise target times used when no goal was set explicitly."""

    defaults: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_GOALS))


@dataclass
class Config:
    """Main configuration object."""

    device_id: Optional[str] = None
    peer: PeerSettings = field(default_factory=PeerSettings)
    cloud: CloudSettings = field(default_factory=CloudSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    goals: GoalSettings = field(default_factory=GoalSettings)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (record store, outbox)."""
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
        """Load config from file, or return defaults.

        A device id is generated and persisted the first time one is needed.
        """
        config_file = cls.get_config_file()
        config = None
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                config = cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        if config is None:
            config = cls()
        if not config.device_id:
            config.device_id = str(uuid.uuid4())
            try:
                config.save()
            except OSError as e:
                logger.warning(f"Could not persist generated device id: {e}")
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        peer_data = data.pop("peer", {})
        cloud_data = data.pop("cloud", {})
        sync_data = data.pop("sync", {})
        session_data = data.pop("session", {})
        goals_data = data.pop("goals", {})

        return cls(
            peer=PeerSettings(**peer_data) if peer_data else PeerSettings(),
            cloud=CloudSettings(**cloud_data) if cloud_data else CloudSettings(),
            sync=SyncSettings(**sync_data) if sync_data else SyncSettings(),
            session=SessionSettings(**session_data) if session_data else SessionSettings(),
            goals=GoalSettings(**goals_data) if goals_data else GoalSettings(),
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def save(self) -> None:
        """Save config to file."""
        config_file = self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "hyrox-sync.log"

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
