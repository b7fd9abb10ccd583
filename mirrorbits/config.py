"""Loading, validation and distribution of the YAML configuration."""

from __future__ import annotations

import os
import queue
import threading
from dataclasses import MISSING, dataclass, field, fields, is_dataclass, replace
from datetime import date
from pathlib import Path
from typing import Any

import yaml

TEMPLATES_PATH = ""
DEFAULT_CONFIG_PATH = "/etc/mirrorbits.conf"
OUTPUT_MODES = ("auto", "json", "redirect")

_BLANK = ""

# Words written in upper case in the configuration file keys.
_ACRONYMS = {
    "js": "JS",
    "db": "DB",
    "rpc": "RPC",
    "url": "URL",
    "sha1": "SHA1",
    "sha256": "SHA256",
    "md5": "MD5",
}


class ConfigError(Exception):
    """The configuration cannot be read or is invalid."""


class _DecodeError(Exception):
    pass


def _yaml_key(name: str) -> str:
    """Return the key used in the configuration file for a field name."""
    return "".join(_ACRONYMS.get(word, word.capitalize()) for word in name.split("_"))


def _items(cls: type) -> Any:
    return field(default_factory=list, metadata={"items": cls})


@dataclass
class Fallback:
    url: str = ""
    country_code: str = ""
    continent_code: str = ""


@dataclass
class Sentinel:
    host: str = ""


@dataclass
class Hashing:
    sha1: bool = False
    sha256: bool = True
    md5: bool = False


@dataclass
class Configuration:
    """Every option available in the configuration file."""

    repository: str = ""
    templates: str = ""
    local_js_path: str = ""
    output_mode: str = "auto"
    listen_address: str = ":8080"
    gzip: bool = False
    same_download_interval: int = 600
    redis_address: str = "127.0.0.1:6379"
    redis_password: str = _BLANK
    redis_db: int = 0
    log_dir: str = ""
    trace_file_location: str = ""
    geoip_database_path: str = "/usr/share/GeoIP/"
    concurrent_sync: int = 5
    scan_interval: int = 30
    check_interval: int = 1
    repository_scan_interval: int = 5
    max_link_headers: int = 10
    fix_timezone_offsets: bool = False
    hashes: Hashing = field(default_factory=Hashing)
    disallow_redirects: bool = False
    weight_distribution_range: float = 1.5
    disable_on_missing_file: bool = False
    fallbacks: list[Fallback] = _items(Fallback)
    redis_sentinel_master_name: str = ""
    redis_sentinels: list[Sentinel] = _items(Sentinel)
    rpc_listen_address: str = "localhost:3390"
    rpc_password: str = _BLANK


def default_config() -> Configuration:
    return Configuration(templates=TEMPLATES_PATH)


def _zero_struct(cls: type) -> Any:
    values = {}
    for f in fields(cls):
        if "items" in f.metadata:
            values[f.name] = []
            continue
        if f.default_factory is not MISSING:  # type: ignore[misc]
            current = f.default_factory()  # type: ignore[misc]
        else:
            current = f.default
        values[f.name] = _zero_struct(type(current)) if is_dataclass(current) else type(current)()
    return cls(**values)


def _decode_scalar(value: Any, kind: type, key: str) -> Any:
    if value is None:
        return kind()
    if kind is str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float, date)):
            return str(value)
    elif kind is bool:
        if isinstance(value, bool):
            return value
    elif kind is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif kind is float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    raise _DecodeError(f"cannot unmarshal {value!r} into {key} ({kind.__name__})")


def _decode_struct(cls: type, node: Any, base: Any, key: str) -> Any:
    if node is None:
        return _zero_struct(cls)
    if not isinstance(node, dict):
        raise _DecodeError(f"cannot unmarshal {node!r} into {key or cls.__name__}")
    by_key = {_yaml_key(f.name): f for f in fields(cls)}
    updates = {}
    for name, value in node.items():
        f = by_key.get(name)
        if f is None:
            continue
        item_cls = f.metadata.get("items")
        current = getattr(base, f.name)
        if item_cls is not None:
            if value is None:
                updates[f.name] = []
            elif isinstance(value, list):
                updates[f.name] = [_decode_struct(item_cls, item, item_cls(), name) for item in value]
            else:
                raise _DecodeError(f"cannot unmarshal {value!r} into {name} (list)")
        elif is_dataclass(current):
            updates[f.name] = _decode_struct(type(current), value, current, name)
        else:
            updates[f.name] = _decode_scalar(value, type(current), name)
    return replace(base, **updates)


def parse_config(content: str | bytes, path: str) -> Configuration:
    """Overlay the YAML document on the defaults and validate the result."""
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise ConfigError(f"{err} in {path}") from err

    config = default_config()
    if document is not None:
        try:
            config = _decode_struct(Configuration, document, config, "")
        except _DecodeError as err:
            raise ConfigError(f"{err} in {path}") from err

    if config.weight_distribution_range <= 0:
        raise ConfigError("WeightDistributionRange must be > 0")
    if config.output_mode not in OUTPUT_MODES:
        raise ConfigError("Config: outputMode can only be set to 'auto', 'json' or 'redirect'")
    if config.repository == "":
        raise ConfigError("Path to local repository not configured (see mirrorbits.conf)")
    config.repository = os.path.abspath(config.repository)
    if config.repository_scan_interval < 0:
        config.repository_scan_interval = 0
    return config


_config: Configuration | None = None
_config_lock = threading.RLock()
_config_file = ""
_subscribers: list[queue.Queue] = []
_subscribers_lock = threading.Lock()


def reload_config(config_file: str | None = None) -> Configuration:
    """Read the configuration file again and make it the current one."""
    global _config, _config_file
    path = _config_file if config_file is None else config_file
    if not path and os.path.exists(DEFAULT_CONFIG_PATH):
        path = DEFAULT_CONFIG_PATH
    _config_file = path

    try:
        content = Path(path).read_bytes()
    except OSError as err:
        raise ConfigError("Configuration could not be found.\n\tUse -config <path>") from err

    if os.environ.get("DEBUG"):
        print("Reading configuration from", path)

    config = parse_config(content, path)
    with _config_lock:
        _config = config
    _notify_subscribers()
    return config


def load_config(config_file: str | None = None) -> Configuration:
    """Load the configuration unless it has already been loaded."""
    with _config_lock:
        if _config is not None:
            return _config
    return reload_config(config_file)


def get_config() -> Configuration:
    with _config_lock:
        if _config is None:
            raise RuntimeError("Configuration not loaded")
        return _config


def set_configuration(config: Configuration | None) -> None:
    """Replace the current configuration directly."""
    global _config
    with _config_lock:
        _config = config


def subscribe_config(subscriber: queue.Queue) -> None:
    """Register a queue that receives True whenever the configuration is reloaded."""
    with _subscribers_lock:
        _subscribers.append(subscriber)


def _notify_subscribers() -> None:
    with _subscribers_lock:
        for subscriber in _subscribers:
            try:
                subscriber.put_nowait(True)
            except queue.Full:
                # The subscriber has not consumed the previous notification yet.
                pass