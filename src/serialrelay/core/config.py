"""
Configuration management for the serial relay.

Loads configuration from YAML files with environment variable overrides.
The relay consumes a validated, immutable RelayConfig snapshot; changing the
configuration means building a new snapshot and applying it as a whole.
"""

import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Optional

import serial
import yaml

from serialrelay.core.models import NONE_PATH, ConfigError

# Default configuration paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "serialrelay"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
SYSTEM_CONFIG_FILE = Path("/etc/serialrelay/config.yaml")

# Serial parameter choices, in the order they are offered to users
BAUD_RATES = (9600, 14400, 19200, 38400, 57600, 115200, 110, 300, 1200, 2400, 4800)
DATA_BITS = (8, 7, 6, 5)
PARITIES = ("none", "even", "odd", "mark", "space")
STOP_BITS = (1, 2)

MAX_CLIENTS = 4

# Short keys written by older host configuration forms
LEGACY_KEYS = {
    "iport": "listen_port",
    "sport": "serial_path",
    "baud": "baud_rate",
    "bits": "data_bits",
    "stop": "stop_bits",
    "response": "response_expected",
    "maxresponse": "max_response_ms",
    "errormessage": "error_message",
    "selectfirstfound": "select_first_found",
}

_PARITY_MAP = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}

_BYTESIZE_MAP = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}

_STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}


@dataclass(frozen=True)
class RelayConfig:
    """Configuration snapshot for one relay instance."""

    listen_port: int = 32100
    listen_host: str = "0.0.0.0"
    serial_path: str = NONE_PATH
    baud_rate: int = BAUD_RATES[0]
    data_bits: int = DATA_BITS[0]
    parity: str = PARITIES[0]
    stop_bits: int = STOP_BITS[0]
    response_expected: bool = False
    max_response_ms: int = 1000
    error_message: bytes = b"ERR:NORESPONSE"
    select_first_found: bool = False
    log_level: str = "INFO"

    @property
    def is_port_configured(self) -> bool:
        """True when a real serial path has been selected."""
        return bool(self.serial_path) and self.serial_path != NONE_PATH

    def validate(self) -> "RelayConfig":
        """Check every field; raise ConfigError on the first bad value."""
        if not (1 <= self.listen_port <= 65535):
            raise ConfigError(
                f"Listen port must be between 1 and 65535, got {self.listen_port}"
            )
        if self.baud_rate not in BAUD_RATES:
            raise ConfigError(f"Unsupported baud rate: {self.baud_rate}")
        if self.data_bits not in DATA_BITS:
            raise ConfigError(f"Unsupported data bits: {self.data_bits}")
        if self.parity not in PARITIES:
            raise ConfigError(f"Unsupported parity: {self.parity}")
        if self.stop_bits not in STOP_BITS:
            raise ConfigError(f"Unsupported stop bits: {self.stop_bits}")
        if self.max_response_ms < 0:
            raise ConfigError("Max response time must not be negative")
        return self

    def with_serial_path(self, path: str) -> "RelayConfig":
        """Return a copy of this snapshot pointing at another serial path."""
        return replace(self, serial_path=path)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayConfig":
        """Create RelayConfig from dictionary, accepting legacy form keys."""
        values = {}
        for key, value in data.items():
            key = LEGACY_KEYS.get(key, key)
            if key in _FIELDS and value is not None:
                values[key] = value

        try:
            for key in ("listen_port", "baud_rate", "data_bits", "stop_bits",
                        "max_response_ms"):
                if key in values:
                    values[key] = int(values[key])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric value in configuration: {e}")

        for key in ("response_expected", "select_first_found"):
            if key in values:
                values[key] = _to_bool(values[key])

        if "parity" in values:
            values["parity"] = str(values["parity"]).lower()
        if "serial_path" in values:
            values["serial_path"] = str(values["serial_path"]) or NONE_PATH
        if isinstance(values.get("error_message"), str):
            values["error_message"] = values["error_message"].encode("utf-8")

        return replace(DEFAULT_CONFIG, **values)

    def to_dict(self) -> dict[str, Any]:
        """Convert RelayConfig to dictionary."""
        data = asdict(self)
        data["error_message"] = self.error_message.decode("utf-8", errors="replace")
        return data


DEFAULT_CONFIG = RelayConfig()
_FIELDS = set(DEFAULT_CONFIG.to_dict())


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def serial_kwargs(config: RelayConfig) -> dict[str, Any]:
    """Map a configuration snapshot onto pyserial keyword arguments."""
    return {
        "baudrate": config.baud_rate,
        "bytesize": _BYTESIZE_MAP[config.data_bits],
        "parity": _PARITY_MAP[config.parity],
        "stopbits": _STOPBITS_MAP[config.stop_bits],
    }


def load_config(config_path: Optional[Path] = None) -> RelayConfig:
    """
    Load configuration from YAML file.

    Search order:
    1. Explicit path if provided
    2. SERIALRELAY_CONFIG environment variable
    3. ~/.config/serialrelay/config.yaml
    4. /etc/serialrelay/config.yaml
    5. Default values

    Environment variable overrides:
    - SERIALRELAY_LISTEN_PORT: Override listen_port
    - SERIALRELAY_SERIAL_PATH: Override serial_path
    - SERIALRELAY_BAUD_RATE: Override baud_rate
    - SERIALRELAY_LOG_LEVEL: Override log_level

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Validated configuration snapshot

    Raises:
        ConfigError: If the resulting configuration is invalid
    """
    if config_path:
        paths_to_try = [config_path]
    else:
        env_path = os.environ.get("SERIALRELAY_CONFIG")
        paths_to_try = []
        if env_path:
            paths_to_try.append(Path(env_path))
        paths_to_try.extend([DEFAULT_CONFIG_FILE, SYSTEM_CONFIG_FILE])

    config_data = {}
    for path in paths_to_try:
        if path.exists():
            try:
                with open(path) as f:
                    config_data = yaml.safe_load(f) or {}
                break
            except (OSError, yaml.YAMLError):
                continue

    config = RelayConfig.from_dict(config_data)
    config = _apply_env_overrides(config)
    return config.validate()


def _apply_env_overrides(config: RelayConfig) -> RelayConfig:
    """Apply environment variable overrides to config."""
    overrides: dict[str, Any] = {}

    for env_name, key in (
        ("SERIALRELAY_LISTEN_PORT", "listen_port"),
        ("SERIALRELAY_BAUD_RATE", "baud_rate"),
    ):
        if env_name in os.environ:
            try:
                overrides[key] = int(os.environ[env_name])
            except ValueError:
                pass

    if "SERIALRELAY_SERIAL_PATH" in os.environ:
        overrides["serial_path"] = os.environ["SERIALRELAY_SERIAL_PATH"]

    if "SERIALRELAY_LOG_LEVEL" in os.environ:
        overrides["log_level"] = os.environ["SERIALRELAY_LOG_LEVEL"]

    return replace(config, **overrides) if overrides else config


def save_config(config: RelayConfig, path: Path) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: Configuration to save
        path: Path to save to
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        f.write("# Serial Relay Configuration\n")
        f.write("# serial_path 'none' leaves the relay unconfigured\n\n")
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)


def get_default_config() -> RelayConfig:
    """Get default configuration without loading from file."""
    return DEFAULT_CONFIG
