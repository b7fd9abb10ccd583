"""Files of the local repository: path validation and hashing."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from datetime import datetime

from mirrorbits.config import get_config

_CHUNK_SIZE = 64 * 1024


@dataclass
class FileInfo:
    """Details about a file served by the redirector."""

    path: str = ""
    size: int = 0
    mod_time: datetime | None = None
    sha1: str = ""
    sha256: str = ""
    md5: str = ""


class OutsideRepositoryError(Exception):
    """The target file lies outside of the repository."""

    def __init__(self, message: str = "target file outside repository") -> None:
        super().__init__(message)


def is_in_repository(repository: str, file_path: str) -> bool:
    return file_path == repository or file_path.startswith(repository + "/")


def evaluate_file_path(repository: str, urlpath: str) -> str:
    """Return the repository-relative path of urlpath once symlinks are resolved.

    Raises OutsideRepositoryError when the path escapes the repository and
    OSError when it does not exist.
    """
    fpath = os.path.abspath(repository + urlpath)
    if not is_in_repository(repository, fpath):
        raise OutsideRepositoryError()

    target = os.path.realpath(fpath, strict=True)
    if target != fpath:
        target = os.path.abspath(target)
        if not is_in_repository(repository, target):
            raise OutsideRepositoryError()
        return target[len(repository):]
    return fpath[len(repository):]


def hash_file(path: str) -> FileInfo:
    """Compute the hashes enabled in the configuration for the given file."""
    hashes = get_config().hashes
    result = FileInfo()
    with open(path, "rb") as f:
        hashers = {}
        if hashes.sha1:
            hashers["sha1"] = hashlib.sha1()
        if hashes.sha256:
            hashers["sha256"] = hashlib.sha256()
        if hashes.md5:
            hashers["md5"] = hashlib.md5()
        if not hashers:
            return result
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            for hasher in hashers.values():
                hasher.update(chunk)
    for name, hasher in hashers.items():
        setattr(result, name, hasher.hexdigest())
    return result


def sha256sum(path: str) -> bytes:
    """Return the raw sha256 digest of the given file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.digest()