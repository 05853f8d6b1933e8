"""
Agent Configuration.

Precedence: CLI flags > environment > YAML file > defaults.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse
import yaml

from ..config import get_settings
from .buffer import OverflowPolicy

DEFAULT_CONFIG_PATHS = [
    "./vitalis-agent.yaml",
    "~/.config/vitalis-agent/config.yaml",
    "/etc/vitalis-agent/config.yaml",
]

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600}


class ConfigError(Exception):
    """Invalid or unreadable configuration."""


def parse_duration(value: Union[int, float, str]) -> float:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) and strings like ``"15s"``, ``"1m"``
    or ``"1m30s"``.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    parts = _DURATION_RE.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ConfigError(f"invalid duration {value!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


@dataclass
class ServerConfig:
    """Ingestion endpoint connection."""
    url: str = "http://localhost:3000"
    machine_token: str = ""
    timeout: float = 10
    max_retries: int = 3
    retry_delay: float = 2


@dataclass
class CollectionConfig:
    """Collection and batching cadence."""
    interval: float = 15  # seconds
    batch_interval: float = 60
    collect_timeout: float = 10  # per-cycle deadline
    top_processes: int = 10


@dataclass
class BufferConfig:
    """Local buffer configuration."""
    enabled: bool = True
    path: str = "./buffer.db"
    max_size_mb: float = 50
    max_batches: Optional[int] = 10000
    overflow: str = OverflowPolicy.DROP_OLDEST.value
    drain_interval: float = 300  # 0 disables periodic drain


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = "./agent.log"


_DURATION_FIELDS = {
    'server': ('timeout', 'retry_delay'),
    'collection': ('interval', 'batch_interval', 'collect_timeout'),
    'buffer': ('drain_interval',),
}


@dataclass
class AgentConfig:
    """Main agent configuration."""
    server: ServerConfig = field(default_factory=ServerConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AgentConfig":
        """Load configuration from YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"reading config file {path}: {e}") from e
        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        """Create config from dictionary, starting from defaults."""
        if not isinstance(data, dict):
            raise ConfigError("config root must be a mapping")

        config = cls()
        sections = {
            'server': ServerConfig,
            'collection': CollectionConfig,
            'buffer': BufferConfig,
            'logging': LoggingConfig,
        }

        unknown = set(data) - sections.keys()
        if unknown:
            raise ConfigError(f"unknown config sections: {', '.join(sorted(map(str, unknown)))}")

        for name, section_cls in sections.items():
            values = data.get(name)
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ConfigError(f"section '{name}' must be a mapping")

            values = dict(values)
            for key in _DURATION_FIELDS.get(name, ()):
                if key in values:
                    values[key] = parse_duration(values[key])

            try:
                setattr(config, name, section_cls(**values))
            except TypeError as e:
                raise ConfigError(f"section '{name}': {e}") from e

        return config

    @classmethod
    def load(
        cls,
        path: Optional[Union[str, Path]] = None,
        url: Optional[str] = None,
        token: Optional[str] = None,
    ) -> "AgentConfig":
        """
        Load configuration with the full precedence chain.

        Without an explicit ``path`` the ``VITALIS_CONFIG_PATH`` variable and
        then the standard locations are searched; a missing file means
        defaults.
        """
        settings = get_settings()

        if path is None:
            path = settings.config_path or locate()

        config = cls.from_yaml(path) if path else cls()

        # Environment overrides
        if settings.server_url:
            config.server.url = settings.server_url
        if settings.machine_token:
            config.server.machine_token = settings.machine_token
        if settings.log_level:
            config.logging.level = settings.log_level
        if settings.log_file:
            config.logging.file = str(settings.log_file)

        # CLI flags
        if url:
            config.server.url = url
        if token:
            config.server.machine_token = token

        return config

    def validate(self):
        """Check that the configuration is usable in production."""
        if not self.server.url:
            raise ConfigError("server URL is required")
        if not self.server.machine_token:
            raise ConfigError("machine token is required")

        parsed = urlparse(self.server.url)
        if parsed.scheme != "https" and parsed.hostname not in ("localhost", "127.0.0.1"):
            raise ConfigError(f"server URL must use HTTPS (got: {self.server.url})")

        if self.collection.interval <= 0 or self.collection.batch_interval <= 0:
            raise ConfigError("collection intervals must be positive")
        if self.collection.collect_timeout <= 0:
            raise ConfigError("collect_timeout must be positive")
        if self.server.max_retries < 0:
            raise ConfigError("max_retries must not be negative")
        if self.buffer.max_batches is not None and self.buffer.max_batches < 1:
            raise ConfigError("buffer.max_batches must be at least 1")
        if self.buffer.max_size_mb <= 0:
            raise ConfigError("buffer.max_size_mb must be positive")

        try:
            OverflowPolicy(self.buffer.overflow)
        except ValueError:
            raise ConfigError(f"unknown buffer overflow policy: {self.buffer.overflow}")

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def locate() -> Optional[str]:
    """Return the first existing default config file, if any."""
    for candidate in DEFAULT_CONFIG_PATHS:
        path = Path(candidate).expanduser()
        if path.is_file():
            return str(path)
    return None
