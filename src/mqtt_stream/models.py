"""
Data Models shared by the session, supervisor and configuration layers.

Defines the immutable configuration record, the parsed broker address
and the session lifecycle states.
"""
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

from mqtt_stream.errors import ConfigError

CLIENT_ID_PREFIX = "mqtt-stream-"


class SessionState(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    TERMINATING = "terminating"


def generate_default_client_id() -> str:
    """Returns a fresh client id like ``mqtt-stream-1a2b3c4d5e6f``."""
    return CLIENT_ID_PREFIX + secrets.token_hex(6)


# --- Broker Address ---

# scheme -> (transport, tls, default port)
_SCHEMES = {
    "tcp": ("tcp", False, 1883),
    "mqtt": ("tcp", False, 1883),
    "ssl": ("tcp", True, 8883),
    "tls": ("tcp", True, 8883),
    "mqtts": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


@dataclass(frozen=True, kw_only=True)
class BrokerAddress:
    """A broker url split into what aiomqtt.Client needs."""
    hostname: str
    port: int
    transport: str = "tcp"
    tls: bool = False
    websocket_path: Optional[str] = None

    @classmethod
    def parse(cls, url: str) -> "BrokerAddress":
        """
        Parses a scheme-qualified broker address, e.g. ``tcp://host:1883``
        or ``wss://host/mqtt``.

        Raises ConfigError for unknown schemes, missing hosts or bad ports.
        """
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in _SCHEMES:
            raise ConfigError(f"unsupported broker scheme in {url!r} (expected one of: {', '.join(_SCHEMES)})")
        if not parts.hostname:
            raise ConfigError(f"missing broker hostname in {url!r}")
        try:
            port = parts.port
        except ValueError as e:
            raise ConfigError(f"invalid broker port in {url!r}") from e

        transport, tls, default_port = _SCHEMES[scheme]
        websocket_path = None
        if transport == "websockets":
            websocket_path = parts.path or "/"

        return cls(
            hostname=parts.hostname,
            port=port or default_port,
            transport=transport,
            tls=tls,
            websocket_path=websocket_path,
        )


# --- Configuration Record ---

@dataclass(frozen=True, kw_only=True)
class StreamConfig:
    """
    Everything a bridge session needs, fully resolved before the
    supervisor starts. Never mutated afterwards.
    """
    host: str = "tcp://test.mosquitto.org:1883"
    from_topic: str = "bar"
    to_topic: str = "foo"
    client_id: str = field(default_factory=generate_default_client_id)
    username: str = ""
    password: str = ""
    hex: bool = False
    echo: bool = False

    # Seconds to wait for a single connect/subscribe/publish.
    operation_timeout: float = 10.0
    # Pause between sessions after a retriable error. 0 reconnects at once.
    reconnect_delay: float = 0.0
    verbose: bool = False

    @property
    def broker(self) -> BrokerAddress:
        return BrokerAddress.parse(self.host)

    def __repr__(self) -> str:
        # keep the password out of logs
        password = "***" if self.password else ""
        return (
            f"StreamConfig(host={self.host!r}, from_topic={self.from_topic!r}, to_topic={self.to_topic!r}, "
            f"client_id={self.client_id!r}, username={self.username!r}, password={password!r}, "
            f"hex={self.hex}, echo={self.echo})"
        )
