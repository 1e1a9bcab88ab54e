"""
Configuration Loader.

Responsible for building the StreamConfig from, in order of precedence:
- command line flags,
- MQTT_STREAM_* environment variables,
- a YAML config file (``--config``),
- built-in defaults.
"""
import argparse
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

from mqtt_stream.errors import ConfigError
from mqtt_stream.models import BrokerAddress, StreamConfig, generate_default_client_id

logger = logging.getLogger(__name__)

ENV_PREFIX = "MQTT_STREAM_"

# flag name -> (StreamConfig field, type)
OPTIONS: Dict[str, tuple] = {
    "host": ("host", str),
    "from": ("from_topic", str),
    "to": ("to_topic", str),
    "client-id": ("client_id", str),
    "username": ("username", str),
    "password": ("password", str),
    "hex": ("hex", bool),
    "echo": ("echo", bool),
    "timeout": ("operation_timeout", float),
    "reconnect-delay": ("reconnect_delay", float),
    "verbose": ("verbose", bool),
}

# short names accepted in the environment and config file, e.g. MQTT_STREAM_V
ALIASES: Dict[str, str] = {
    "v": "verbose",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _flag_bool(text: str) -> bool:
    try:
        return parse_bool(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file {path}: {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"config file {path} must contain a mapping of option names to values")
    logger.info(f"Loaded configuration from {path}")
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mqtt-stream",
        description="Print messages from an MQTT topic and publish stdin lines to another topic.",
    )
    # Defaults stay None so we can tell which flags were actually given.
    parser.add_argument("--host", help="mqtt broker address (tcp, ssl, ws or wss), default tcp://test.mosquitto.org:1883")
    parser.add_argument("--from", dest="from_", metavar="TOPIC", help="topic to subscribe, default bar")
    parser.add_argument("--to", metavar="TOPIC", help="topic to publish, default foo")
    parser.add_argument("--client-id", help="client id, default mqtt-stream-<random hex>")
    parser.add_argument("--username", help="username")
    parser.add_argument("--password", help="password")
    # --hex alone turns it on, --hex=false turns it off again
    parser.add_argument("--hex", nargs="?", const=True, type=_flag_bool, metavar="BOOL", help="enable hexadecimal input/output")
    parser.add_argument("--echo", nargs="?", const=True, type=_flag_bool, metavar="BOOL", help='enable echo data from topic "from" to topic "to"')
    parser.add_argument("--timeout", type=float, help="seconds to wait for each broker operation, default 10")
    parser.add_argument("--reconnect-delay", type=float, help="seconds to wait before reconnecting, default 0")
    parser.add_argument("-v", "--verbose", nargs="?", const=True, type=_flag_bool, metavar="BOOL", help="enable verbose logs")
    parser.add_argument("--config", help="YAML config file")
    return parser


def _coerce(name: str, value: Any, kind: type) -> Any:
    if kind is bool:
        try:
            return parse_bool(value)
        except ValueError as e:
            raise ConfigError(f"invalid boolean for {name}: {value!r}") from e
    if kind is float:
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid number for {name}: {value!r}") from e
        if number < 0:
            raise ConfigError(f"{name} must not be negative")
        return number
    if value is None:
        return ""
    return str(value)


def _from_flags(args: argparse.Namespace) -> Dict[str, Any]:
    values = {}
    for name in OPTIONS:
        attr = "from_" if name == "from" else name.replace("-", "_")
        value = getattr(args, attr)
        if value is not None:
            values[name] = value
    return values


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values = {}
    for alias, name in ALIASES.items():
        key = ENV_PREFIX + alias.upper()
        if key in environ:
            values[name] = environ[key]
    for name in list(OPTIONS) + ["config"]:
        key = ENV_PREFIX + name.upper().replace("-", "_")
        if key in environ:
            values[name] = environ[key]
    return values


def _resolve_aliases(values: Dict[str, Any]) -> Dict[str, Any]:
    resolved = {ALIASES[name]: value for name, value in values.items() if name in ALIASES}
    resolved.update((name, value) for name, value in values.items() if name not in ALIASES)
    return resolved


def load_stream_config(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> StreamConfig:
    """
    Builds the StreamConfig used by the supervisor.

    Raises ConfigError for unknown config file keys, bad values or an
    unsupported broker address.
    """
    environ = os.environ if environ is None else environ
    parser = build_parser()
    args = parser.parse_args(argv)

    flag_values = _from_flags(args)
    env_values = _from_env(environ)

    file_values: Dict[str, Any] = {}
    env_config_path = env_values.pop("config", None)
    config_path = args.config or env_config_path
    if config_path:
        file_values = _resolve_aliases(load_config(config_path))
        unknown = set(file_values) - set(OPTIONS)
        if unknown:
            raise ConfigError(f"unknown options in config file: {', '.join(sorted(unknown))}")

    merged: Dict[str, Any] = {}
    for source in (file_values, env_values, flag_values):
        merged.update(source)

    fields = {}
    for name, value in merged.items():
        field_name, kind = OPTIONS[name]
        fields[field_name] = _coerce(name, value, kind)

    if not fields.get("client_id"):
        fields["client_id"] = generate_default_client_id()

    config = StreamConfig(**fields)
    # fail early on a bad address instead of inside every session
    BrokerAddress.parse(config.host)
    return config
