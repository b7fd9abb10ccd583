"""Runtime logs and the downloads log."""

from __future__ import annotations

import logging
import os
import platform
import socket
import stat
import sys
import threading
import time
from datetime import datetime
from typing import IO, Any

logger = logging.getLogger(__name__)

LOGGER_NAME = "mirrorbits"
DOWNLOADS_LOG_NAME = "downloads.log"

_COLORS = {
    logging.CRITICAL: "\033[35m",
    logging.ERROR: "\033[31m",
    logging.WARNING: "\033[33m",
    logging.INFO: "\033[32m",
    logging.DEBUG: "\033[36m",
}
_RESET = "\033[0m"


def is_terminal(stream: Any) -> bool:
    """Tell whether stream is attached to a character device."""
    try:
        mode = os.fstat(stream.fileno()).st_mode
    except (AttributeError, OSError, ValueError):
        return False
    return stat.S_ISCHR(mode)


def open_log_file(logfile: str) -> tuple[IO[str], bool]:
    """Open logfile for appending; the flag tells whether it was new or empty."""
    try:
        is_new = os.stat(logfile).st_size <= 0
    except OSError:
        is_new = True
    fd = os.open(logfile, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o664)
    try:
        return os.fdopen(fd, "a", encoding="utf-8"), is_new
    except BaseException:
        os.close(fd)
        raise


class _RuntimeFormatter(logging.Formatter):
    def __init__(self, debug: bool, color: bool) -> None:
        super().__init__()
        self._debug = debug
        self._color = color

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        ct = time.localtime(record.created)
        return "%s.%03d %s" % (
            time.strftime("%Y/%m/%d %H:%M:%S", ct),
            int(record.msecs),
            time.strftime("%Z", ct),
        )

    def format(self, record: logging.LogRecord) -> str:
        line = f"{self.formatTime(record)} {record.getMessage()}"
        if self._debug:
            line = f"{record.filename}:{record.lineno}".ljust(20) + line
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        if self._color:
            line = _COLORS.get(record.levelno, "") + line + _RESET
        return line


class RuntimeLogger:
    """Destination of the program's own log messages."""

    def __init__(self, logger_name: str = LOGGER_NAME) -> None:
        self.logger_name = logger_name
        self.stream: Any = None
        self._handler: logging.Handler | None = None

    def reload(self, run_log: str = "", debug: bool = False) -> None:
        """(Re)open the log destination: run_log if given, standard error otherwise."""
        if self.stream is not None and self.stream is sys.stderr and not run_log:
            # Already writing to the console; reopening would break journald.
            return

        if self.stream is not None and self.stream is not sys.stderr:
            try:
                self.stream.close()
            except OSError:
                pass

        if run_log:
            try:
                self.stream, _ = open_log_file(run_log)
            except OSError:
                print("Cannot open log file for writing", file=sys.stderr)
                self.stream = sys.stderr
        else:
            self.stream = sys.stderr

        target = logging.getLogger(self.logger_name)
        if self._handler is not None:
            target.removeHandler(self._handler)
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(_RuntimeFormatter(debug, is_terminal(self.stream)))
        target.addHandler(handler)
        target.propagate = False
        target.setLevel(logging.DEBUG if debug else logging.INFO)
        self._handler = handler


def _path(results: Any) -> str:
    file_info = getattr(results, "file_info", None)
    return (getattr(file_info, "path", "") or "") if file_info is not None else ""


def format_download(typ: str, status_code: int, results: Any, err: BaseException | None) -> str:
    """Describe the outcome of a download request in one line."""
    errstr = "<unknown>" if err is None else str(err)
    mirror_list = list(getattr(results, "mirror_list", None) or []) if results is not None else []

    if status_code in (302, 200) and results is not None and mirror_list:
        mirror = mirror_list[0]
        distance = f"{float(mirror.distance):.2f}"
        countries = ",".join(mirror.country_fields or [])
        fallback = " fallback:true" if results.fallback else ""
        client = getattr(results, "client_info", None)
        client_asnum = getattr(client, "asnum", 0) if client is not None else 0
        same_asnum = "same" if mirror.asnum > 0 and mirror.asnum == client_asnum else ""
        return (
            f'{typ} {status_code} "{_path(results)}" ip:{results.ip} mirror:{mirror.name}'
            f"{fallback} {same_asnum}asn:{mirror.asnum} distance:{distance}km "
            f"countries:{countries}"
        )
    if status_code == 404 and results is not None:
        return f'{typ} 404 "{_path(results)}" ip:{results.ip}'
    if status_code == 500 and results is not None:
        name = mirror_list[0].name if mirror_list else "unknown"
        return f'{typ} 500 "{_path(results)}" ip:{results.ip} mirror:{name} error:{errstr}'
    path = _path(results) if results is not None else ""
    ip = results.ip if results is not None else ""
    return f'{typ} {status_code} "{path}" ip:{ip} error:{errstr}'


class DownloadsLogger:
    """Log of the downloads served, one line per request."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.writer: Any = None
        self.file: Any = None

    def close(self) -> None:
        """Close the log file and disable logging."""
        if self.file is not None:
            self.file.close()
            self.file = None
        self.writer = None

    def set_writer(self, writer: Any, create_header: bool) -> None:
        """Send the download log to writer, starting with a header if asked."""
        self.writer = writer
        if create_header:
            header = (
                f"# Log file created at: {datetime.now().strftime('%Y/%m/%d %H:%M:%S')}\n"
                f"# Running on machine: {socket.gethostname()}\n"
                f"# Binary: Built with {platform.python_implementation()} "
                f"{platform.python_version()} for {sys.platform}/{platform.machine()}\n"
            )
            writer.write(header)
            flush = getattr(writer, "flush", None)
            if flush is not None:
                flush()

    def reload(self, log_dir: str) -> None:
        """Reopen the downloads log found in log_dir; an empty log_dir disables it."""
        with self._lock:
            self.close()
            if not log_dir:
                return
            logfile = os.path.join(log_dir, DOWNLOADS_LOG_NAME)
            try:
                stream, create_header = open_log_file(logfile)
            except OSError:
                logger.critical("Cannot open log file %s", logfile)
                return
            self.set_writer(stream, create_header)
            self.file = stream

    def log_download(
        self, typ: str, status_code: int, results: Any, err: BaseException | None
    ) -> None:
        """Write the outcome of a download request, if the log is enabled."""
        with self._lock:
            if self.writer is None:
                return
            stamp = datetime.now().strftime("%Y/%m/%d %H:%M:%S.%f")
            self.writer.write(f"{stamp} {format_download(typ, status_code, results, err)}\n")
            flush = getattr(self.writer, "flush", None)
            if flush is not None:
                flush()


runtime_logger = RuntimeLogger()
downloads_logger = DownloadsLogger()