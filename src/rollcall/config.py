"""Configuration loading and merging for rollcall."""

import os
import re
from dataclasses import dataclass, fields
from pathlib import Path

import yaml


DEFAULT_DSN = "sqlite:///rollcall.db"

# Registry names end up in the table name, so keep them to a safe charset.
REGISTRY_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,48}$")


@dataclass
class RollcallConfig:
    # Store connection (any SQLAlchemy URL)
    dsn: str | None = None
    registry_name: str = "default"

    # Liveness timing
    heartbeat_interval: float = 5.0
    max_batch_size: int = 100
    # Seconds a partial batch may wait before it is flushed (None: heartbeat_interval)
    flush_interval: float | None = None

    log_level: str = "INFO"


def inactive_threshold(heartbeat_interval: float) -> float:
    """Seconds without a heartbeat before an entry counts as dead."""
    return 2 * heartbeat_interval


def check_batching(max_batch_size: int, flush_interval: float) -> None:
    """Raise ValueError unless the coalescer settings keep the queue bounded."""
    if max_batch_size < 1:
        raise ValueError("max_batch_size must be at least 1")
    if flush_interval <= 0:
        raise ValueError("flush_interval must be positive")


def check_timing(heartbeat_interval: float, max_batch_size: int,
                 flush_interval: float | None = None,
                 gc_interval: float | None = None) -> None:
    """Raise ValueError on the first out-of-range timing or batching value."""
    if heartbeat_interval <= 0:
        raise ValueError("heartbeat_interval must be positive")
    check_batching(max_batch_size, heartbeat_interval if flush_interval is None else flush_interval)
    if gc_interval is not None and gc_interval <= 0:
        raise ValueError("gc_interval must be positive")


def validate_registry_name(name: str) -> str:
    """Return *name* unchanged, or raise ValueError if it is unsafe as a table suffix."""
    if not isinstance(name, str) or not REGISTRY_NAME_RE.match(name):
        raise ValueError(
            f"Invalid registry name {name!r}: use 1-48 letters, digits or underscores"
        )
    return name


def validate_config(config: RollcallConfig) -> RollcallConfig:
    """Check value ranges. Raises ValueError on the first bad field."""
    validate_registry_name(config.registry_name)
    check_timing(config.heartbeat_interval, config.max_batch_size, config.flush_interval)
    return config


def resolve_dsn(config: RollcallConfig) -> str:
    """Return the DSN from config, the environment, or the local SQLite default."""
    return config.dsn or os.environ.get("ROLLCALL_DSN") or DEFAULT_DSN


def load_config(path: str | Path) -> RollcallConfig:
    """Load a RollcallConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    valid_fields = {f.name for f in fields(RollcallConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return RollcallConfig(**filtered)


def merge_cli_args(config: RollcallConfig, args) -> RollcallConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(RollcallConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def config_to_yaml(config: RollcallConfig) -> str:
    """Serialize a RollcallConfig to YAML."""
    data: dict = {}
    if config.dsn:
        data["dsn"] = config.dsn
    data["registry_name"] = config.registry_name
    data["heartbeat_interval"] = config.heartbeat_interval
    data["max_batch_size"] = config.max_batch_size
    if config.flush_interval is not None:
        data["flush_interval"] = config.flush_interval
    data["log_level"] = config.log_level
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
