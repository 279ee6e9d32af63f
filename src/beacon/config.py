"""Configuration loading and merging for beacon."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


DEFAULT_ETCD_PORT = 2379


@dataclass
class BeaconConfig:
    # etcd connection
    endpoints: list[str] = field(default_factory=lambda: ["localhost:2379"])
    username: Optional[str] = None
    password: Optional[str] = None
    dial_timeout: float = 5.0

    # Lease TTL (seconds) for registered keys
    ttl: int = 10

    # Delay after a registration attempt ends; doubled per consecutive
    # failed attempt up to max_retry_interval
    retry_interval: float = 1.0
    max_retry_interval: float = 30.0

    # Full refetch period for watched prefixes
    resync_interval: float = 5.0

    # Pause before re-bootstrapping a watch whose stream broke
    watch_retry_interval: float = 1.0


def parse_endpoint(endpoint: str) -> tuple[str, int]:
    """Split ``host[:port]`` (an ``http://`` scheme is tolerated)."""
    endpoint = endpoint.strip()
    for scheme in ("http://", "https://"):
        if endpoint.startswith(scheme):
            endpoint = endpoint[len(scheme):]
    endpoint = endpoint.rstrip("/")
    if not endpoint:
        raise ValueError("empty endpoint")
    host, sep, port_str = endpoint.rpartition(":")
    if not sep:
        return endpoint, DEFAULT_ETCD_PORT
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in endpoint '{endpoint}'") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in endpoint '{endpoint}'")
    return host, port


def validate_config(config: BeaconConfig) -> BeaconConfig:
    """Raise ValueError if *config* cannot be used to build a registry."""
    if not config.endpoints:
        raise ValueError("at least one endpoint is required")
    for endpoint in config.endpoints:
        parse_endpoint(endpoint)
    if config.ttl <= 0:
        raise ValueError(f"ttl must be positive, got {config.ttl}")
    for name in ("dial_timeout", "retry_interval", "max_retry_interval",
                 "resync_interval", "watch_retry_interval"):
        if getattr(config, name) <= 0:
            raise ValueError(f"{name} must be positive, got {getattr(config, name)}")
    if config.max_retry_interval < config.retry_interval:
        raise ValueError("max_retry_interval must not be smaller than retry_interval")
    return config


def resolve_password(config: BeaconConfig) -> Optional[str]:
    """Return the password from config or environment."""
    return config.password or os.environ.get("BEACON_PASSWORD")


def load_config(path: str | Path) -> BeaconConfig:
    """Load a BeaconConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    valid_fields = {f.name for f in fields(BeaconConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    # A single endpoint may be written as a plain string
    if isinstance(filtered.get("endpoints"), str):
        filtered["endpoints"] = [filtered["endpoints"]]

    return BeaconConfig(**filtered)


def merge_cli_args(config: BeaconConfig, args) -> BeaconConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(BeaconConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def config_to_yaml(config: BeaconConfig) -> str:
    """Serialize a BeaconConfig to YAML. The password is never written out."""
    data: dict = {"endpoints": list(config.endpoints)}
    if config.username:
        data["username"] = config.username
    data["dial_timeout"] = config.dial_timeout
    data["ttl"] = config.ttl
    data["retry_interval"] = config.retry_interval
    data["max_retry_interval"] = config.max_retry_interval
    data["resync_interval"] = config.resync_interval
    data["watch_retry_interval"] = config.watch_retry_interval
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
