import json
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from errors import InvalidConfig, InvalidUpstream
from upstream import HAS_PYSOCKS

# RFC 1929 length fields are a single byte
MAX_CREDENTIAL_BYTES = 255


class ServerConfig:
    """Validated settings for the local SOCKS5 listener."""

    def __init__(self, port: int = 0, username: Optional[str] = None, password: Optional[str] = None):
        self.port = port
        self.username = username
        self.password = password

    @property
    def uses_auth(self) -> bool:
        return self.username is not None

    def __repr__(self):
        return f"ServerConfig(port={self.port}, uses_auth={self.uses_auth})"


class UpstreamConfig:
    """Validated settings for the chained upstream SOCKS5 proxy."""

    def __init__(self, host: str, port: int, username: str, password: str):
        self.host = host
        self.port = port
        self.username = username
        self.password = password

    def __repr__(self):
        return f"UpstreamConfig(host={self.host!r}, port={self.port})"


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _too_long(value: str) -> bool:
    return len(value.encode('utf-8')) > MAX_CREDENTIAL_BYTES


def validate_config(config) -> ServerConfig:
    """Check the server settings dict ``{port, user, password}``.

    ``None`` means defaults: auto-assigned port, no authentication.
    Empty credentials count as absent; giving only one of the pair is an error.
    """
    if config is None:
        return ServerConfig()
    if not isinstance(config, Mapping):
        raise InvalidConfig("Invalid config object")

    port = config.get('port')
    if port is None:
        port = 0
    if not _is_int(port) or not 0 <= port <= 65535:
        raise InvalidConfig("Invalid port")

    user = config.get('user')
    password = config.get('password')
    if user is not None and not isinstance(user, str):
        raise InvalidConfig("Invalid user")
    if password is not None and not isinstance(password, str):
        raise InvalidConfig("Invalid password")

    user = user or None
    password = password or None
    if (user is None) != (password is None):
        raise InvalidConfig("user and password must be given together")
    if user is not None and (_too_long(user) or _too_long(password)):
        raise InvalidConfig(f"user and password must be at most {MAX_CREDENTIAL_BYTES} bytes")

    return ServerConfig(port=port, username=user, password=password)


def validate_upstream(upstream) -> Optional[UpstreamConfig]:
    """Check the upstream settings dict; ``None`` selects direct-connect mode."""
    if upstream is None:
        return None
    if not isinstance(upstream, Mapping):
        raise InvalidUpstream("Invalid proxy object")

    host = upstream.get('hostProxy')
    if not host or not isinstance(host, str):
        raise InvalidUpstream("Invalid or missing hostProxy")
    port = upstream.get('portProxy')
    if not _is_int(port) or not 1 <= port <= 65535:
        raise InvalidUpstream("Invalid or missing portProxy")
    user = upstream.get('userProxy')
    if not user or not isinstance(user, str) or _too_long(user):
        raise InvalidUpstream("Invalid or missing userProxy")
    password = upstream.get('passwordProxy')
    if not password or not isinstance(password, str) or _too_long(password):
        raise InvalidUpstream("Invalid or missing passwordProxy")

    if not HAS_PYSOCKS:
        raise InvalidUpstream("Upstream chaining requires PySocks (pip install pysocks)")

    return UpstreamConfig(host=host, port=port, username=user, password=password)


def validate(config=None, upstream=None):
    """Validate both settings before any socket is opened.

    Returns ``(ServerConfig, UpstreamConfig or None)``.
    """
    return validate_config(config), validate_upstream(upstream)


def read_config_file(path):
    """Read the raw JSON settings file; returns ``(config_dict, upstream_dict or None)``."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding='utf-8'))
    except (OSError, ValueError) as e:
        raise InvalidConfig(f"Cannot read config file {p}: {e}") from e
    if not isinstance(data, dict):
        raise InvalidConfig("Invalid config object")

    data = dict(data)
    upstream = data.pop('upstream', None)
    return data, upstream


def load_config_file(path):
    """Load and validate ``{"port", "user", "password", "upstream": {...}}`` from JSON."""
    return validate(*read_config_file(path))
