import io
import logging
import re
import sys
from dataclasses import dataclass, field

import pytest

from mirrorbits.logs import (
    DownloadsLogger,
    RuntimeLogger,
    format_download,
    is_terminal,
    open_log_file,
)

STAMP = re.compile(r"^\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2}\.\d{6} ")


@dataclass
class FakeFileInfo:
    path: str = ""


@dataclass
class FakeMirror:
    id: int
    name: str
    asnum: int = 0
    distance: float = 0.0
    country_fields: list = field(default_factory=list)


@dataclass
class FakeClient:
    asnum: int = 0


@dataclass
class FakeResults:
    file_info: FakeFileInfo = field(default_factory=FakeFileInfo)
    mirror_list: list = field(default_factory=list)
    ip: str = ""
    client_info: FakeClient = field(default_factory=FakeClient)
    fallback: bool = False


class CloseTester:
    def __init__(self):
        self.closed = False

    def write(self, data):
        return 0

    def close(self):
        self.closed = True


@pytest.fixture
def runtime_logger():
    name = "mirrorbits_test_runtime"
    rl = RuntimeLogger(logger_name=name)
    yield rl
    target = logging.getLogger(name)
    for handler in list(target.handlers):
        target.removeHandler(handler)
    if rl.stream is not None and rl.stream is not sys.stderr:
        rl.stream.close()


def test_downloads_logger_close():
    dl = DownloadsLogger()
    closer = CloseTester()
    dl.file = closer
    assert closer.closed is False
    dl.close()
    assert closer.closed is True
    assert dl.writer is None
    assert dl.file is None


def test_is_terminal_false_for_files(tmp_path):
    with open(tmp_path / "file.txt", "w") as f:
        assert is_terminal(f) is False
    assert is_terminal(io.StringIO()) is False


def test_reload_runtime_logs(runtime_logger, tmp_path):
    runtime_logger.reload("", False)
    assert runtime_logger.stream is sys.stderr
    target = logging.getLogger(runtime_logger.logger_name)
    assert target.level == logging.INFO

    first = runtime_logger.stream
    runtime_logger.reload("", False)
    assert runtime_logger.stream is first

    runtime_logger.reload("/", False)
    assert runtime_logger.stream is sys.stderr

    logfile = tmp_path / "runtime.log"
    logfile.write_text("")
    runtime_logger.reload(str(logfile), True)
    assert target.level == logging.DEBUG
    assert runtime_logger.stream is not sys.stderr

    target.error("Testing42")
    assert "Testing42" in logfile.read_text()

    runtime_logger.reload("", False)
    assert runtime_logger.stream is sys.stderr


def test_open_log_file(tmp_path):
    path = str(tmp_path / "test1.log")
    f, is_new = open_log_file(path)
    assert is_new is True
    content = "It works!"
    assert f.write(content) == len(content)
    f.close()

    f, is_new = open_log_file(path)
    assert is_new is False
    f.close()

    with pytest.raises(OSError):
        open_log_file("")


def test_set_download_log_writer():
    dl = DownloadsLogger()
    assert dl.writer is None and dl.file is None

    buf = io.StringIO()
    dl.set_writer(buf, True)
    assert dl.writer is buf
    assert len(buf.getvalue()) > 0
    assert buf.getvalue().startswith("#")

    other = io.StringIO()
    dl.set_writer(other, False)
    assert other.getvalue() == ""


def test_reload_download_logs(tmp_path):
    dl = DownloadsLogger()
    dl.reload(str(tmp_path))
    dl.log_download("JSON", 404, FakeResults(FakeFileInfo("/a"), ip="10.0.0.1"), None)
    dl.close()
    dl.reload(str(tmp_path))
    dl.close()

    lines = (tmp_path / "downloads.log").read_text().splitlines()
    assert sum(1 for line in lines if line.startswith("#")) == 3
    assert lines[-1].endswith('JSON 404 "/a" ip:10.0.0.1')

    dl.reload("")
    assert dl.writer is None
    dl.reload(str(tmp_path / "missing"))
    assert dl.writer is None


def test_log_download_disabled_writes_nothing():
    dl = DownloadsLogger()
    dl.log_download("", 500, None, None)
    assert dl.writer is None


def test_log_download_without_results():
    dl = DownloadsLogger()
    buf = io.StringIO()
    dl.set_writer(buf, True)
    buf.seek(0)
    buf.truncate()

    for code in (200, 302, 404, 500, 501):
        dl.log_download("", code, None, None)

    output = buf.getvalue()
    assert output.count("\n") == 5
    assert all(STAMP.match(line) for line in output.splitlines())


def test_log_download_lines():
    dl = DownloadsLogger()
    buf = io.StringIO()
    dl.set_writer(buf, False)

    results = FakeResults(
        file_info=FakeFileInfo("/test/file.tgz"),
        mirror_list=[
            FakeMirror(1, "m1", asnum=444, distance=99, country_fields=["FR", "UK", "DE"]),
            FakeMirror(2, "m2"),
        ],
        ip="192.168.0.1",
        client_info=FakeClient(asnum=444),
        fallback=True,
    )
    dl.log_download("JSON", 200, results, None)
    expected = (
        'JSON 200 "/test/file.tgz" ip:192.168.0.1 mirror:m1 fallback:true '
        "sameasn:444 distance:99.00km countries:FR,UK,DE\n"
    )
    assert buf.getvalue().endswith(expected)
    assert STAMP.match(buf.getvalue())

    buf.seek(0)
    buf.truncate()
    results = FakeResults(file_info=FakeFileInfo("/test/file.tgz"), ip="192.168.0.1")
    dl.log_download("JSON", 404, results, None)
    assert buf.getvalue().endswith('JSON 404 "/test/file.tgz" ip:192.168.0.1\n')

    buf.seek(0)
    buf.truncate()
    results = FakeResults(mirror_list=[FakeMirror(1, "m1"), FakeMirror(2, "m2")])
    dl.log_download("JSON", 500, results, RuntimeError("test error"))
    assert buf.getvalue().endswith('JSON 500 "" ip: mirror:m1 error:test error\n')

    buf.seek(0)
    buf.truncate()
    results = FakeResults(file_info=FakeFileInfo("/test/file.tgz"), ip="192.168.0.1")
    dl.log_download("JSON", 501, results, RuntimeError("test error"))
    assert buf.getvalue().endswith(
        'JSON 501 "/test/file.tgz" ip:192.168.0.1 error:test error\n'
    )


@pytest.mark.parametrize(
    "code, expected",
    [
        (200, 'X 200 "" ip: error:<unknown>'),
        (404, 'X 404 "" ip: error:<unknown>'),
        (500, 'X 500 "" ip: error:<unknown>'),
    ],
)
def test_format_download_without_results(code, expected):
    assert format_download("X", code, None, None) == expected


def test_format_download_different_asn_and_unknown_mirror():
    results = FakeResults(
        file_info=FakeFileInfo("/f"),
        mirror_list=[FakeMirror(3, "m3", asnum=10, distance=1.5, country_fields=["US"])],
        ip="10.1.1.1",
        client_info=FakeClient(asnum=20),
    )
    assert format_download("REDIRECT", 302, results, None) == (
        'REDIRECT 302 "/f" ip:10.1.1.1 mirror:m3 asn:10 distance:1.50km countries:US'
    )
    empty = FakeResults(file_info=FakeFileInfo("/f"), ip="10.1.1.1")
    assert format_download("JSON", 500, empty, None) == (
        'JSON 500 "/f" ip:10.1.1.1 mirror:unknown error:<unknown>'
    )