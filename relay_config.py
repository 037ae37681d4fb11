"""
relay_config.py
---------------
Configuration for the chat relay server.

Values come from (lowest to highest precedence):
- the RelayConfig defaults below
- an optional YAML mapping file (same keys as the dataclass fields)
- command-line overrides passed in by server.py
"""

import os
from dataclasses import dataclass, field, fields, replace

import yaml

HERE = os.path.dirname(os.path.abspath(__file__))

DEFAULT_LISTEN = ":8080"
DEFAULT_HISTORY_SIZE = 10


class ConfigError(ValueError):
    """Raised for unreadable or invalid relay configuration."""


def parse_listen(addr: str) -> tuple[str, int]:
    """
    Split a listen address of the form "host:port" or ":port".
    An empty host means all interfaces.
    """
    if not isinstance(addr, str) or ":" not in addr:
        raise ConfigError(f"listen address must look like host:port, got {addr!r}")
    host, _, port_s = addr.rpartition(":")
    host = host.strip("[]") or "0.0.0.0"
    try:
        port = int(port_s)
    except ValueError:
        raise ConfigError(f"invalid port in listen address {addr!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range in listen address {addr!r}")
    return host, port


@dataclass
class RelayConfig:
    upload_dir: str = "./uploads"
    static_dir: str = field(default_factory=lambda: os.path.join(HERE, "static"))
    history_size: int = DEFAULT_HISTORY_SIZE
    listen: str = DEFAULT_LISTEN
    log_level: str = "info"

    def __post_init__(self):
        if isinstance(self.history_size, bool) or not isinstance(self.history_size, int):
            raise ConfigError(f"history_size must be an integer, got {self.history_size!r}")
        if self.history_size < 0:
            raise ConfigError("history_size must be >= 0")
        # validates early so a bad address fails before the server starts
        parse_listen(self.listen)

    @property
    def host(self) -> str:
        return parse_listen(self.listen)[0]

    @property
    def port(self) -> int:
        return parse_listen(self.listen)[1]


def load_yaml(yaml_path: str) -> dict:
    try:
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {yaml_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {yaml_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{yaml_path} must contain a mapping at top level")
    return data


def load_config(yaml_path: str | None = None, **overrides) -> RelayConfig:
    """
    Build a RelayConfig from an optional YAML file plus keyword overrides.
    Overrides whose value is None are ignored so argparse defaults can be
    passed straight through.
    """
    known = {f.name for f in fields(RelayConfig)}
    values = load_yaml(yaml_path) if yaml_path else {}

    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"unknown config key: {key}")
        if value is not None:
            values[key] = value

    return replace(RelayConfig(), **values)
