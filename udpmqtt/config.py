from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml

from udpmqtt.errors import ConfigError

logger = logging.getLogger("udpmqtt.config")

CONFIG_DIRECTORY = "udp-mqtt-bridge"
CONFIG_FILENAME = "config.yaml"
LOCAL_CONFIG_DIRECTORY = "configs"

DEFAULT_PING_TYPE = "com.bosch-engineering.ping"
DEFAULT_PING_SOURCE = "https://bosch-engineering.com"
DEFAULT_PING_DATA = "ping"

_TLS_SCHEMES = {"ssl", "tls", "mqtts", "wss"}
_SCHEMES = _TLS_SCHEMES | {"tcp", "mqtt", "ws"}


@dataclass(slots=True)
class BridgeConfig:
    """Everything the bridge needs at startup, keyed like the YAML file."""

    client_id: str
    protocol: str
    endpoint: str
    port: int
    topic_in: str
    topic_out: str
    udp_ip_in: str
    udp_port_in: int
    udp_ip_out: str
    udp_port_out: int
    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    root_ca: Optional[str] = None
    qos: int = 0
    ping_type: str = DEFAULT_PING_TYPE
    ping_source: str = DEFAULT_PING_SOURCE
    ping_data: str = DEFAULT_PING_DATA
    correlation_max_entries: Optional[int] = None
    correlation_ttl: Optional[float] = None

    @property
    def broker_url(self) -> str:
        return f"{self.protocol}://{self.endpoint}:{self.port}"

    @property
    def uses_tls(self) -> bool:
        return self.protocol in _TLS_SCHEMES

    def validate(self) -> None:
        if self.protocol not in _SCHEMES:
            raise ConfigError(
                f"awsIotProtocol must be one of {', '.join(sorted(_SCHEMES))}, got {self.protocol!r}"
            )
        for key, value in (
            ("awsIotPort", self.port),
            ("udpPortIn", self.udp_port_in),
            ("udpPortOut", self.udp_port_out),
        ):
            if not 0 <= value <= 65535:
                raise ConfigError(f"{key} out of range: {value}")
        if self.uses_tls:
            missing = [
                key
                for key, value in (
                    ("awsIotCert", self.cert_file),
                    ("awsIotKey", self.key_file),
                    ("awsIotRootCA", self.root_ca),
                )
                if not value
            ]
            if missing:
                raise ConfigError(
                    f"{self.protocol} requires TLS material: missing {', '.join(missing)}"
                )
        if self.qos not in (0, 1, 2):
            raise ConfigError(f"mqttQos must be 0, 1 or 2, got {self.qos}")
        if self.correlation_max_entries is not None and self.correlation_max_entries <= 0:
            raise ConfigError("correlationMaxEntries must be positive")
        if self.correlation_ttl is not None and self.correlation_ttl <= 0:
            raise ConfigError("correlationTtl must be positive")

    def summary(self) -> Dict[str, Any]:
        """Printable view of the config (file paths only, never contents)."""
        return asdict(self)


def user_config_dir() -> Path:
    return Path(typer.get_app_dir(CONFIG_DIRECTORY))


def config_dir(cwd: Optional[Path] = None) -> Path:
    """Resolve the configuration directory.

    A ``configs`` directory in the working directory wins; otherwise the
    per-user configuration directory is used.
    """
    local = (cwd or Path.cwd()) / LOCAL_CONFIG_DIRECTORY
    if local.is_dir():
        logger.info("Using local configuration directory: %s", local)
        return local
    user_dir = user_config_dir()
    logger.info("Using user configuration directory: %s", user_dir)
    return user_dir


def find_config_file(cwd: Optional[Path] = None) -> Path:
    return config_dir(cwd) / CONFIG_FILENAME


def _get(raw: Dict[str, Any], key: str, kind: type, required: bool = True, default: Any = None) -> Any:
    value = raw.get(key)
    if value is None:
        if required:
            raise ConfigError(f"missing required field {key!r}")
        return default
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key!r} must be an integer, got {value!r}")
        return value
    if kind is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key!r} must be a number, got {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"{key!r} must be a string, got {value!r}")
    return value


def load_config(path: str | Path) -> BridgeConfig:
    """Parse the YAML config file into a validated BridgeConfig."""

    file_path = Path(path)
    if not file_path.is_file():
        raise ConfigError(f"configuration file not found: {file_path}")

    logger.info("Loading configuration from %s", file_path)
    try:
        raw = yaml.safe_load(file_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"cannot read {file_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {file_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a mapping")

    config = BridgeConfig(
        client_id=_get(raw, "awsClientId", str),
        protocol=_get(raw, "awsIotProtocol", str).lower(),
        endpoint=_get(raw, "awsIotEndpoint", str),
        port=_get(raw, "awsIotPort", int),
        topic_in=_get(raw, "mqttTopicIn", str),
        topic_out=_get(raw, "mqttTopicOut", str),
        udp_ip_in=_get(raw, "udpIpIn", str),
        udp_port_in=_get(raw, "udpPortIn", int),
        udp_ip_out=_get(raw, "udpIpOut", str),
        udp_port_out=_get(raw, "udpPortOut", int),
        cert_file=_get(raw, "awsIotCert", str, required=False),
        key_file=_get(raw, "awsIotKey", str, required=False),
        root_ca=_get(raw, "awsIotRootCA", str, required=False),
        qos=_get(raw, "mqttQos", int, required=False, default=0),
        ping_type=_get(raw, "pingType", str, required=False, default=DEFAULT_PING_TYPE),
        ping_source=_get(raw, "pingSource", str, required=False, default=DEFAULT_PING_SOURCE),
        ping_data=_get(raw, "pingData", str, required=False, default=DEFAULT_PING_DATA),
        correlation_max_entries=_get(raw, "correlationMaxEntries", int, required=False),
        correlation_ttl=_get(raw, "correlationTtl", float, required=False),
    )
    config.validate()
    logger.debug("Configuration loaded: %s", config.summary())
    return config
