"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Optional
import json

from dotenv import load_dotenv


@dataclass
class Config:
    """
    peerdrop configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (PEERDROP_*)
    2. Config file (config.json)
    3. Default values
    """
    # Relay server
    host: str = '0.0.0.0'
    port: int = 3001
    relay_url: str = 'ws://localhost:3001/ws'

    # Local save
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Session directory
    session_idle_timeout: float = 600.0  # 10 minutes
    session_sweep_interval: float = 60.0
    max_code_attempts: int = 100

    # Offers
    max_file_size: int = 4 * 1024 * 1024 * 1024  # 4GB

    # Channel retry (seconds)
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    connect_timeout: float = 15.0

    # Scheduler
    sample_interval: float = 0.5
    stall_timeout: float = 60.0
    max_inflight_bytes: int = 8 * 1024 * 1024  # 8MB

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, base: Optional['Config'] = None) -> 'Config':
        """
        Load configuration from environment variables.

        Only variables that are set override ``base`` (defaults if omitted).
        """
        load_dotenv()

        config = replace(base) if base is not None else cls()

        # Relay server
        config.host = os.getenv('PEERDROP_HOST', config.host)
        config.port = int(os.getenv('PEERDROP_PORT', config.port))
        config.relay_url = os.getenv('PEERDROP_RELAY_URL', config.relay_url)

        download_dir = os.getenv('PEERDROP_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Session directory
        config.session_idle_timeout = float(
            os.getenv('PEERDROP_SESSION_IDLE_TIMEOUT', config.session_idle_timeout)
        )
        config.session_sweep_interval = float(
            os.getenv('PEERDROP_SESSION_SWEEP_INTERVAL', config.session_sweep_interval)
        )
        config.max_code_attempts = int(
            os.getenv('PEERDROP_MAX_CODE_ATTEMPTS', config.max_code_attempts)
        )

        config.max_file_size = int(os.getenv('PEERDROP_MAX_FILE_SIZE', config.max_file_size))

        # Retry
        config.max_retries = int(os.getenv('PEERDROP_MAX_RETRIES', config.max_retries))
        config.retry_base_delay = float(
            os.getenv('PEERDROP_RETRY_BASE_DELAY', config.retry_base_delay)
        )
        config.retry_max_delay = float(
            os.getenv('PEERDROP_RETRY_MAX_DELAY', config.retry_max_delay)
        )
        config.connect_timeout = float(
            os.getenv('PEERDROP_CONNECT_TIMEOUT', config.connect_timeout)
        )

        # Scheduler
        config.sample_interval = float(
            os.getenv('PEERDROP_SAMPLE_INTERVAL', config.sample_interval)
        )
        config.stall_timeout = float(os.getenv('PEERDROP_STALL_TIMEOUT', config.stall_timeout))
        config.max_inflight_bytes = int(
            os.getenv('PEERDROP_MAX_INFLIGHT_BYTES', config.max_inflight_bytes)
        )

        # Logging
        config.log_level = os.getenv('PEERDROP_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Relay server
        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)
        config.relay_url = data.get('relay_url', config.relay_url)

        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        # Session directory
        config.session_idle_timeout = data.get('session_idle_timeout', config.session_idle_timeout)
        config.session_sweep_interval = data.get(
            'session_sweep_interval', config.session_sweep_interval
        )
        config.max_code_attempts = data.get('max_code_attempts', config.max_code_attempts)

        config.max_file_size = data.get('max_file_size', config.max_file_size)

        # Retry
        config.max_retries = data.get('max_retries', config.max_retries)
        config.retry_base_delay = data.get('retry_base_delay', config.retry_base_delay)
        config.retry_max_delay = data.get('retry_max_delay', config.retry_max_delay)
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)

        # Scheduler
        config.sample_interval = data.get('sample_interval', config.sample_interval)
        config.stall_timeout = data.get('stall_timeout', config.stall_timeout)
        config.max_inflight_bytes = data.get('max_inflight_bytes', config.max_inflight_bytes)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'relay_url': self.relay_url,
            'download_dir': str(self.download_dir),
            'session_idle_timeout': self.session_idle_timeout,
            'session_sweep_interval': self.session_sweep_interval,
            'max_code_attempts': self.max_code_attempts,
            'max_file_size': self.max_file_size,
            'max_retries': self.max_retries,
            'retry_base_delay': self.retry_base_delay,
            'retry_max_delay': self.retry_max_delay,
            'connect_timeout': self.connect_timeout,
            'sample_interval': self.sample_interval,
            'stall_timeout': self.stall_timeout,
            'max_inflight_bytes': self.max_inflight_bytes,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with whatever environment variables are set
    return Config.from_env(config)


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 3001,
  "relay_url": "ws://localhost:3001/ws",
  "download_dir": "./downloads",
  "session_idle_timeout": 600,
  "max_file_size": 4294967296,
  "max_retries": 3,
  "retry_base_delay": 1.0,
  "stall_timeout": 60,
  "log_level": "INFO"
}
"""
