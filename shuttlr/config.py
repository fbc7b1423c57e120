"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .errors import ConfigError

# Data channels reject messages above their negotiated max-message-size
# (256KB for most browsers), chunks have to stay well below it.
MAX_CHUNK_SIZE = 256 * 1024


@dataclass
class Config:
    """
    shuttlr configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (SHUTTLR_*)
    2. Config file (config.json)
    3. Default values
    """
    # Signaling
    signaling_url: str = 'ws://localhost:8765'
    connect_timeout: float = 10.0
    offer_delay: float = 0.1

    # Peer connection
    ice_servers: List[str] = field(
        default_factory=lambda: ['stun:stun.l.google.com:19302']
    )
    channel_label: str = 'fileTransfer'

    # Transfer
    chunk_size: int = 16 * 1024  # 16KB
    buffer_threshold: int = 1024 * 1024  # 1MB
    buffer_poll_interval: float = 0.01
    buffer_timeout: float = 10.0
    read_timeout: float = 5.0
    send_delay: float = 0.001

    # Retry
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 5.0

    # Storage
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Servers
    relay_host: str = '0.0.0.0'
    relay_port: int = 8765
    api_host: str = '127.0.0.1'
    api_port: int = 8080

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Signaling
        config.signaling_url = os.getenv('SHUTTLR_SIGNALING_URL', config.signaling_url)
        config.connect_timeout = float(
            os.getenv('SHUTTLR_CONNECT_TIMEOUT', config.connect_timeout)
        )

        ice = os.getenv('SHUTTLR_ICE_SERVERS', '')
        if ice:
            config.ice_servers = [url.strip() for url in ice.split(',') if url.strip()]

        # Transfer
        config.chunk_size = int(os.getenv('SHUTTLR_CHUNK_SIZE', config.chunk_size))
        config.buffer_threshold = int(
            os.getenv('SHUTTLR_BUFFER_THRESHOLD', config.buffer_threshold)
        )
        config.buffer_timeout = float(
            os.getenv('SHUTTLR_BUFFER_TIMEOUT', config.buffer_timeout)
        )
        config.read_timeout = float(os.getenv('SHUTTLR_READ_TIMEOUT', config.read_timeout))
        config.max_retries = int(os.getenv('SHUTTLR_MAX_RETRIES', config.max_retries))

        # Storage
        download_dir = os.getenv('SHUTTLR_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Servers
        config.relay_port = int(os.getenv('SHUTTLR_RELAY_PORT', config.relay_port))
        config.api_port = int(os.getenv('SHUTTLR_API_PORT', config.api_port))

        # Logging
        config.log_level = os.getenv('SHUTTLR_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read config file {path}: {e}")

        config = cls()

        for key in ['signaling_url', 'connect_timeout', 'offer_delay', 'ice_servers',
                    'channel_label', 'chunk_size', 'buffer_threshold',
                    'buffer_poll_interval', 'buffer_timeout', 'read_timeout',
                    'send_delay', 'max_retries', 'retry_base_delay',
                    'retry_max_delay', 'relay_host', 'relay_port', 'api_host',
                    'api_port', 'log_level']:
            if key in data:
                setattr(config, key, data[key])

        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        return config

    def validate(self) -> 'Config':
        """Check value ranges. Raises ConfigError on the first bad value."""
        if not 0 < self.chunk_size <= MAX_CHUNK_SIZE:
            raise ConfigError(
                f"chunk_size must be between 1 and {MAX_CHUNK_SIZE} bytes, got {self.chunk_size}"
            )
        if self.buffer_threshold < self.chunk_size:
            raise ConfigError("buffer_threshold must be at least one chunk")
        for name in ['connect_timeout', 'buffer_timeout', 'read_timeout',
                     'buffer_poll_interval']:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.max_retries < 0:
            raise ConfigError("max_retries cannot be negative")
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'signaling_url': self.signaling_url,
            'connect_timeout': self.connect_timeout,
            'offer_delay': self.offer_delay,
            'ice_servers': list(self.ice_servers),
            'channel_label': self.channel_label,
            'chunk_size': self.chunk_size,
            'buffer_threshold': self.buffer_threshold,
            'buffer_poll_interval': self.buffer_poll_interval,
            'buffer_timeout': self.buffer_timeout,
            'read_timeout': self.read_timeout,
            'send_delay': self.send_delay,
            'max_retries': self.max_retries,
            'retry_base_delay': self.retry_base_delay,
            'retry_max_delay': self.retry_max_delay,
            'download_dir': str(self.download_dir),
            'relay_host': self.relay_host,
            'relay_port': self.relay_port,
            'api_host': self.api_host,
            'api_port': self.api_port,
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

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in ['signaling_url', 'connect_timeout', 'ice_servers', 'chunk_size',
                'buffer_threshold', 'buffer_timeout', 'read_timeout',
                'max_retries', 'download_dir', 'relay_port', 'api_port',
                'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config.validate()


# Example config file template
EXAMPLE_CONFIG = """
{
  "signaling_url": "ws://localhost:8765",
  "ice_servers": ["stun:stun.l.google.com:19302"],
  "chunk_size": 16384,
  "buffer_threshold": 1048576,
  "buffer_timeout": 10.0,
  "read_timeout": 5.0,
  "max_retries": 3,
  "download_dir": "./downloads",
  "log_level": "INFO"
}
"""
