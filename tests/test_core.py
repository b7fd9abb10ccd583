from datetime import timedelta

import pytest

from mirrorbits import core


def test_default_flags():
    flags = core.parse_flags([])
    assert flags.rpc_port == 3390
    assert flags.rpc_host == "localhost"
    assert flags.monitor is True
    assert flags.daemon is False
    assert flags.args == []


def test_global_flags_and_remaining_arguments():
    flags = core.parse_flags(["-h", "example.org", "-p=4000", "list", "-x"])
    assert flags.rpc_host == "example.org"
    assert flags.rpc_port == 4000
    assert flags.args == ["list", "-x"]


def test_password_and_ask_pass():
    flags = core.parse_flags(["-P", "password", "-a", "mirrors"])
    assert flags.rpc_password == "password"
    assert flags.rpc_ask_pass is True
    assert flags.args == ["mirrors"]


def test_double_dash_stops_parsing():
    flags = core.parse_flags(["--", "-p"])
    assert flags.args == ["-p"]
    assert flags.rpc_port == 3390


def test_daemon_flags():
    argv = [
        "daemon",
        "-config", "/tmp/m.conf",
        "-monitor=false",
        "-p", "/run/m.pid",
        "-log", "/var/log/m.log",
        "-debug",
    ]
    flags = core.parse_flags(argv)
    assert flags.daemon is True
    assert flags.config_file == "/tmp/m.conf"
    assert flags.monitor is False
    assert flags.pid_file == "/run/m.pid"
    assert flags.run_log == "/var/log/m.log"
    assert flags.debug is True
    assert flags.rpc_port == 3390
    assert flags.args == argv


@pytest.mark.parametrize(
    "argv",
    [
        ["-unknown"],
        ["-p"],
        ["-p", "abc"],
        ["-p", "-5"],
        ["-a=maybe"],
        ["---x"],
        ["daemon", "-config"],
        ["daemon", "-h", "host"],
    ],
)
def test_invalid_flags(argv):
    with pytest.raises(ValueError):
        core.parse_flags(argv)


def test_precision_duration():
    assert core.Precision(1_000_000_000).duration() == timedelta(seconds=1)
    assert core.Precision().duration() == timedelta(0)


def test_version_info():
    info = core.get_version_info()
    assert info.version == core.VERSION
    assert info.build == core.BUILD + core.DEV
    assert info.max_procs >= 1


def test_print_version(capsys):
    info = core.VersionInfo("1.0", "b1", "3.x", "linux", "x86_64", 4)
    core.print_version(info)
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 6
    assert lines[1] == " Build:" + " " * 12 + "b1"
    assert lines[0].endswith(" 1.0")
    assert lines[5].endswith(" 4")