# Newsdeck — configuration
# Override via newsdeck.yaml, environment variables or CLI args (in that order).

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

CONFIG_PATH = Path(__file__).parent.parent / "newsdeck.yaml"


@dataclass
class Config:
    """Runtime configuration for the ingestion server."""

    # Storage
    db_path: str = "~/.local/share/newsdeck/newsdeck.db"

    # HTTP
    host: str = "127.0.0.1"
    port: int = 3000
    api_key: str = ""  # required for POST /api/news-items

    # Durable broadcast topic: a Redis stream shared by every process
    broadcast_redis_url: str = ""
    broadcast_stream: str = "newsdeck:news-items"
    broadcast_stream_maxlen: int = 10000

    # Broadcast topic push subscriber URLs; empty means local delivery only
    broadcast_urls: List[str] = field(default_factory=list)
    broadcast_timeout_secs: float = 2.0

    # Local delivery queue retention
    queue_max_updates: int = 100
    queue_max_age_secs: float = 300.0

    # Subscribers
    stream_heartbeat_secs: float = 30.0
    long_poll_timeout_secs: float = 25.0

    log_level: str = "INFO"

    # Seed data for the channel-group directory
    channel_groups: List[Dict[str, Any]] = field(default_factory=list)

    def apply_env(self, env: Optional[Dict[str, str]] = None):
        """NEWSDECK_DB, NEWSDECK_API_KEY, NEWSDECK_REDIS_URL, NEWSDECK_BROADCAST_URLS (comma separated)."""
        env = os.environ if env is None else env
        if env.get("NEWSDECK_DB"):
            self.db_path = env["NEWSDECK_DB"]
        if env.get("NEWSDECK_API_KEY"):
            self.api_key = env["NEWSDECK_API_KEY"]
        if env.get("NEWSDECK_REDIS_URL"):
            self.broadcast_redis_url = env["NEWSDECK_REDIS_URL"]
        if env.get("NEWSDECK_BROADCAST_URLS"):
            self.broadcast_urls = [
                u.strip() for u in env["NEWSDECK_BROADCAST_URLS"].split(",") if u.strip()
            ]

    def resolve_paths(self):
        self.db_path = str(Path(self.db_path).expanduser())

    def validate(self):
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.broadcast_stream_maxlen < 1:
            raise ConfigError("broadcast_stream_maxlen must be at least 1")
        if self.queue_max_updates < 1:
            raise ConfigError("queue_max_updates must be at least 1")
        if self.stream_heartbeat_secs <= 0 or self.long_poll_timeout_secs <= 0:
            raise ConfigError("Heartbeat and long-poll timeouts must be positive")
        for group in self.channel_groups:
            if not isinstance(group, dict) or "id" not in group:
                raise ConfigError(f"channel_groups entries need an id: {group!r}")

    @classmethod
    def load(cls, path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> "Config":
        """Load config from YAML, falling back to defaults when the file is absent."""
        cfg_path = Path(path) if path else CONFIG_PATH
        data: Dict[str, Any] = {}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")

        known = {f.name for f in fields(cls)}
        cfg = cls(**{k: v for k, v in data.items() if k in known})
        cfg.apply_env(env)
        cfg.resolve_paths()
        cfg.validate()
        return cfg
