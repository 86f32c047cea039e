"""
Configuration management for netup.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import toml

Address = Tuple[str, int]


def parse_address(text: str) -> Address:
    """Split a ``host:port`` string into a socket address tuple."""
    host, sep, port = text.rpartition(':')
    if not sep or not host:
        raise ValueError(f"Address must be in host:port form: {text!r}")
    host = host.strip('[]')
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in address {text!r}")
    if not 0 <= port_number <= 65535:
        raise ValueError(f"Port out of range in address {text!r}")
    return host, port_number


@dataclass
class ClientConfig:
    """Probe client configuration settings."""
    remote: str = "127.0.0.1:56700"
    bind: str = ""
    interval_ms: int = 10
    port_range_start: int = 56701
    port_range_end: int = 65535
    addressed: bool = False
    idle_sleep: float = 0.0

    @property
    def remote_address(self) -> Address:
        return parse_address(self.remote)

    @property
    def bind_address(self) -> Optional[Address]:
        return parse_address(self.bind) if self.bind else None


@dataclass
class ServerConfig:
    """Echo responder configuration settings."""
    bind: str = "0.0.0.0:56700"
    policy: str = "source"

    @property
    def bind_address(self) -> Address:
        return parse_address(self.bind)


@dataclass
class RecorderConfig:
    """History, export and statistics settings."""
    export_path: str = ""
    export_interval: float = 1.0
    max_delay_ms: int = 500
    lookback_ms: int = 300000
    max_silence_ms: int = 50
    retain_ms: int = 600000
    summary_interval: float = 5.0


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    file: str = ""
    max_size: int = 10
    backup_count: int = 3

    def resolve_level(self) -> int:
        """Numeric level for the configured name, e.g. 'debug' -> 10."""
        level = logging.getLevelName(self.level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level {self.level!r}")
        return level


@dataclass
class Config:
    """Main configuration class."""
    client: ClientConfig = field(default_factory=ClientConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    recorder: RecorderConfig = field(default_factory=RecorderConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> 'Config':
        """Configuration with every setting at its default."""
        return cls()

    @classmethod
    def from_file(cls, config_path: Path) -> 'Config':
        """Load configuration from TOML file."""
        try:
            config_data = toml.load(config_path)
        except (OSError, toml.TomlDecodeError) as e:
            raise ValueError(f"Failed to load configuration: {e}")
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> 'Config':
        """Build configuration from parsed TOML data; missing keys keep defaults."""
        try:
            return cls(
                client=ClientConfig(**config_data.get('client', {})),
                server=ServerConfig(**config_data.get('server', {})),
                recorder=RecorderConfig(**config_data.get('recorder', {})),
                logging=LoggingConfig(**config_data.get('logging', {})),
            )
        except TypeError as e:
            raise ValueError(f"Unknown configuration key: {e}")

    def validate(self) -> bool:
        """Validate configuration values."""
        # Validate client settings
        parse_address(self.client.remote)
        if self.client.bind:
            parse_address(self.client.bind)

        if self.client.interval_ms <= 0:
            raise ValueError("Probe interval must be positive")

        if not 1 <= self.client.port_range_start <= self.client.port_range_end <= 65535:
            raise ValueError(
                f"Invalid local port range {self.client.port_range_start}-"
                f"{self.client.port_range_end}"
            )

        if self.client.idle_sleep < 0:
            raise ValueError("Idle sleep must not be negative")

        # Validate server settings
        parse_address(self.server.bind)

        if self.server.policy not in ('source', 'return_port'):
            raise ValueError(
                f"Echo policy must be 'source' or 'return_port', got {self.server.policy!r}"
            )

        # Validate recorder settings
        if self.recorder.max_delay_ms <= 0:
            raise ValueError("Maximum delay must be positive")

        if self.recorder.export_interval <= 0 or self.recorder.summary_interval <= 0:
            raise ValueError("Export and summary intervals must be positive")

        if self.recorder.retain_ms < self.recorder.max_delay_ms:
            raise ValueError("Retention must be at least the maximum delay")

        # Validate logging settings
        self.logging.resolve_level()

        return True
