"""
Configuration loader for Beetle.
Reads settings from a YAML file with environment variable substitution.

The resulting Settings object is built once by the application and passed
into Client, Publisher, Subscriber, the deduplication store and the redis
configuration processes.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


def split_servers(value: Any) -> list[str]:
    """Accept "a:1, b:2" strings as well as lists and return a clean list."""
    if not value:
        return []
    if isinstance(value, str):
        return [s.strip() for s in value.split(",") if s.strip()]
    return [str(s).strip() for s in value if str(s).strip()]


@dataclass
class BrokerConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    servers: list[str] = field(default_factory=lambda: ["localhost:6379"])
    additional_subscription_servers: list[str] = field(default_factory=list)
    publish_timeout: float = 5.0        # per server, seconds
    server_cooldown: float = 10.0       # seconds a failed server is skipped
    consumer_group: str = "beetle"
    block_ms: int = 2000                # XREADGROUP block time
    rpc_timeout: float = 30.0

    def __post_init__(self):
        self.servers = split_servers(self.servers)
        self.additional_subscription_servers = split_servers(self.additional_subscription_servers)


@dataclass
class DedupConfig:
    backend: str = "memory"             # "memory" | "redis"
    redis_servers: list[str] = field(default_factory=lambda: ["localhost:6379"])
    redis_db: int = 4
    key_prefix: str = "msgid"
    gc_interval: float = 300.0          # seconds between expired-record sweeps, 0 disables

    def __post_init__(self):
        self.redis_servers = split_servers(self.redis_servers)


@dataclass
class FailoverConfig:
    redis_servers: list[str] = field(default_factory=list)
    retry_timeout: float = 10.0         # seconds without answer before "down"
    poll_interval: float = 1.0          # configuration server check cycle
    system_channel: str = "beetle:system:redis_master"
    epoch_key: str = "beetle:redis_master_epoch"
    pid_file: str = ""

    def __post_init__(self):
        self.redis_servers = split_servers(self.redis_servers)


@dataclass
class Settings:
    app_name: str = "beetle"
    log_level: str = "info"
    brokers: BrokerConfig = field(default_factory=BrokerConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    failover: FailoverConfig = field(default_factory=FailoverConfig)

    @property
    def redis_servers(self) -> list[str]:
        """Servers watched by the configuration processes, defaults to the dedup set."""
        return self.failover.redis_servers or self.dedup.redis_servers

    @property
    def subscription_servers(self) -> list[str]:
        """Publishing servers followed by the subscribe-only ones, without duplicates."""
        servers = []
        for server in self.brokers.servers + self.brokers.additional_subscription_servers:
            if server not in servers:
                servers.append(server)
        return servers


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: Optional[dict[str, Any]]):
    raw = raw or {}
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    raw = _process_values(raw or {})
    defaults = Settings()
    return Settings(
        app_name=raw.get("app_name", defaults.app_name),
        log_level=raw.get("log_level", defaults.log_level),
        brokers=_section(BrokerConfig, raw.get("brokers")),
        dedup=_section(DedupConfig, raw.get("dedup")),
        failover=_section(FailoverConfig, raw.get("failover")),
    )


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file. Missing file means defaults."""
    if config_path is None:
        config_path = os.environ.get("BEETLE_CONFIG", "")

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        return settings_from_dict(raw)

    return Settings()
