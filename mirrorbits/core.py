"""Shared constants, command-line flags and build information."""

from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass, field
from datetime import timedelta
from enum import IntEnum

BANNER = (
    " _______ __                        __     __ __\n"
    "|   |   |__|.----.----.-----.----.|  |--.|__|  |_.-----.\n"
    "|       |  ||   _|   _|  _  |   _||  _  ||  |   _|__ --|\n"
    "|__|_|__|__||__| |__| |_____|__|  |_____||__|____|_____|  %s"
)

VERSION = ""
BUILD = ""
DEV = ""

REDIS_MINIMUM_VERSION = "3.2.0"
DB_VERSION = 1
DB_VERSION_KEY = "MIRRORBITS_DB_VERSION"


class ContextKey(IntEnum):
    """Keys of the values attached to an outgoing health-check request."""

    ALLOW_REDIRECTS = 0
    MIRROR_ID = 1
    MIRROR_NAME = 2


class ScannerType(IntEnum):
    """Kind of scanner used to list the files of a mirror."""

    RSYNC = 0
    FTP = 1


@dataclass(frozen=True)
class Precision:
    """Precision of a modification time, stored in nanoseconds."""

    nanoseconds: int = 0

    def duration(self) -> timedelta:
        return timedelta(microseconds=self.nanoseconds / 1000)


@dataclass
class Flags:
    """Options given on the command line."""

    daemon: bool = False
    debug: bool = False
    monitor: bool = True
    config_file: str = ""
    cpu_profile: str = ""
    pid_file: str = ""
    run_log: str = ""
    rpc_port: int = 3390
    rpc_host: str = "localhost"
    rpc_password: str = ""
    rpc_ask_pass: bool = False
    args: list[str] = field(default_factory=list)


_GLOBAL_FLAGS = {
    "debug": ("debug", bool),
    "cpuprofile": ("cpu_profile", str),
    "p": ("rpc_port", int),
    "h": ("rpc_host", str),
    "P": ("rpc_password", str),
    "a": ("rpc_ask_pass", bool),
}

_DAEMON_FLAGS = {
    "debug": ("debug", bool),
    "cpuprofile": ("cpu_profile", str),
    "config": ("config_file", str),
    "monitor": ("monitor", bool),
    "p": ("pid_file", str),
    "log": ("run_log", str),
}

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(name: str, value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f'invalid boolean value "{value}" for -{name}')


def _parse_uint(name: str, value: str) -> int:
    try:
        if len(value) > 1 and value[0] == "0" and value[1].isdigit():
            number = int(value, 8)
        else:
            number = int(value, 0)
    except ValueError:
        raise ValueError(f'invalid value "{value}" for flag -{name}: parse error') from None
    if number < 0:
        raise ValueError(f'invalid value "{value}" for flag -{name}: parse error')
    return number


def _parse_flag_set(args: list[str], specs: dict, flags: Flags) -> list[str]:
    """Apply the flags found at the head of args and return the remaining ones."""
    rest = list(args)
    while rest:
        arg = rest[0]
        if len(arg) < 2 or not arg.startswith("-"):
            break
        rest.pop(0)
        if arg == "--":
            break
        name = arg[2:] if arg.startswith("--") else arg[1:]
        if not name or name[0] in "-=":
            raise ValueError(f"bad flag syntax: {arg}")
        name, has_value, value = name.partition("=")
        spec = specs.get(name)
        if spec is None:
            raise ValueError(f"flag provided but not defined: -{name}")
        attr, kind = spec
        if kind is bool:
            setattr(flags, attr, _parse_bool(name, value) if has_value else True)
            continue
        if not has_value:
            if not rest:
                raise ValueError(f"flag needs an argument: -{name}")
            value = rest.pop(0)
        setattr(flags, attr, _parse_uint(name, value) if kind is int else value)
    return rest


def parse_flags(argv: list[str] | None = None) -> Flags:
    """Parse the command line; a first argument of "daemon" selects server mode."""
    if argv is None:
        argv = sys.argv[1:]
    flags = Flags()
    flags.args = _parse_flag_set(argv, _GLOBAL_FLAGS, flags)

    # Declaring the daemon flag set puts these two options back to their defaults.
    flags.debug = False
    flags.cpu_profile = ""

    if argv and argv[0] == "daemon":
        flags.daemon = True
        _parse_flag_set(argv[1:], _DAEMON_FLAGS, flags)
    return flags


@dataclass(frozen=True)
class VersionInfo:
    """Details of the running build."""

    version: str
    build: str
    python_version: str
    os_name: str
    arch: str
    max_procs: int


def get_version_info() -> VersionInfo:
    return VersionInfo(
        version=VERSION,
        build=BUILD + DEV,
        python_version=platform.python_version(),
        os_name=sys.platform,
        arch=platform.machine(),
        max_procs=os.cpu_count() or 1,
    )


def print_version(info: VersionInfo) -> None:
    rows = (
        ("Version:", info.version),
        ("Build:", info.build),
        ("Python:", info.python_version),
        ("Operating System:", info.os_name),
        ("Architecture:", info.arch),
        ("Processors:", info.max_procs),
    )
    for label, value in rows:
        print(f" {label:<17} {value}")