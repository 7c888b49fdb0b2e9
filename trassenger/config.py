"""
Configuration management for Trassenger.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, asdict, fields

logger = logging.getLogger(__name__)

# Default mailbox relay (override via environment)
DEFAULT_SERVER_URL = os.environ.get(
    "TRASSENGER_SERVER_URL",
    "https://trassenger-mailbox.deno.dev"
)

# Adaptive polling bounds, in seconds
DEFAULT_POLL_FLOOR_SECS = 5
DEFAULT_POLL_CEILING_SECS = 60

# The background service polls at the ceiling only
DEFAULT_BACKGROUND_INTERVAL_SECS = 60

DEFAULT_REQUEST_TIMEOUT_SECS = 30

# On-disk layout inside the data directory
KEYS_DIRNAME = "keys"
IDENTITY_FILENAME = "identity.json"
PEERS_FILENAME = "peers.json"
CONFIG_FILENAME = "config.json"
DATA_DIRNAME = "data"
MESSAGES_DB_FILENAME = "messages.db"
LOGS_DIRNAME = "logs"
ACTIVE_SESSION_MARKER_FILENAME = "tui.running"
SINGLE_INSTANCE_MARKER_FILENAME = "daemon.pid"


def get_data_dir() -> Path:
    """Resolve the data directory. TRASSENGER_DATA_DIR wins over ~/.trassenger."""
    custom = os.environ.get("TRASSENGER_DATA_DIR")
    if custom:
        return Path(custom).expanduser()
    return Path.home() / ".trassenger"


@dataclass
class Paths:
    """Locations of every file Trassenger keeps on disk."""
    root: Path

    @classmethod
    def default(cls) -> "Paths":
        return cls(root=get_data_dir())

    @property
    def keys_dir(self) -> Path:
        return self.root / KEYS_DIRNAME

    @property
    def identity_file(self) -> Path:
        return self.keys_dir / IDENTITY_FILENAME

    @property
    def peers_file(self) -> Path:
        return self.root / PEERS_FILENAME

    @property
    def config_file(self) -> Path:
        return self.root / CONFIG_FILENAME

    @property
    def messages_db(self) -> Path:
        return self.root / DATA_DIRNAME / MESSAGES_DB_FILENAME

    @property
    def logs_dir(self) -> Path:
        return self.root / LOGS_DIRNAME

    @property
    def active_session_marker(self) -> Path:
        return self.root / ACTIVE_SESSION_MARKER_FILENAME

    @property
    def single_instance_marker(self) -> Path:
        return self.root / SINGLE_INSTANCE_MARKER_FILENAME

    def ensure(self) -> None:
        """Create the directory structure (keys directory owner-only)."""
        for directory in [self.root, self.keys_dir, self.root / DATA_DIRNAME, self.logs_dir]:
            directory.mkdir(parents=True, exist_ok=True)
        self.keys_dir.chmod(0o700)


@dataclass
class Config:
    """Trassenger client configuration."""
    server_url: str = DEFAULT_SERVER_URL
    poll_floor_secs: int = DEFAULT_POLL_FLOOR_SECS
    poll_ceiling_secs: int = DEFAULT_POLL_CEILING_SECS
    background_interval_secs: int = DEFAULT_BACKGROUND_INTERVAL_SECS
    request_timeout_secs: float = DEFAULT_REQUEST_TIMEOUT_SECS
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.poll_floor_secs <= 0:
            raise ValueError("poll_floor_secs must be positive")
        if self.poll_floor_secs > self.poll_ceiling_secs:
            raise ValueError(
                f"poll_floor_secs ({self.poll_floor_secs}) exceeds "
                f"poll_ceiling_secs ({self.poll_ceiling_secs})"
            )
        if self.background_interval_secs <= 0:
            raise ValueError("background_interval_secs must be positive")

    @classmethod
    def default(cls) -> "Config":
        """Create default configuration."""
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Create config from a dictionary, ignoring keys we don't know."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}

        # Older config files only carried a single fixed interval
        if 'polling_interval_secs' in data and 'background_interval_secs' not in data:
            values['background_interval_secs'] = data['polling_interval_secs']

        unknown = set(data) - known - {'polling_interval_secs'}
        if unknown:
            logger.debug(f"Ignoring unknown config keys: {sorted(unknown)}")

        return cls(**values)

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load configuration from file, falling back to defaults if absent."""
        if not path.exists():
            return cls.default()
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    def save(self, path: Path) -> None:
        """Save configuration to file."""
        self.validate()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
