"""What a request asks for, worked out from its query and headers."""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Mapping
from urllib.parse import parse_qs


class RequestType(IntEnum):
    STANDARD = 0
    MIRRORLIST = 1
    FILESTATS = 2
    MIRRORSTATS = 3
    CHECKSUM = 4


class SecureOption(IntEnum):
    """TLS requirement of the mirrors to select."""

    UNDEFINED = 5
    WITHTLS = 6
    WITHOUTTLS = 7


def _header(headers: Mapping[str, str], name: str) -> str:
    wanted = name.lower()
    return next((value for key, value in headers.items() if key.lower() == wanted), "")


class RequestContext:
    """The kind of answer a request wants and its options."""

    def __init__(
        self,
        query: str | Mapping[str, list[str]] = "",
        headers: Mapping[str, str] | None = None,
        *,
        request: Any = None,
        response: Any = None,
        templates: Any = None,
    ) -> None:
        if isinstance(query, str):
            self.values: dict[str, list[str]] = parse_qs(query, keep_blank_values=True)
        else:
            self.values = {key: list(value) for key, value in query.items()}
        self.request = request
        self.response = response
        self.templates = templates

        self.is_mirrorlist = False
        self.is_file_stats = False
        self.is_mirror_stats = False
        self.is_checksum = False
        if self.has_param("mirrorlist"):
            self.type = RequestType.MIRRORLIST
            self.is_mirrorlist = True
        elif self.has_param("stats"):
            self.type = RequestType.FILESTATS
            self.is_file_stats = True
        elif self.has_param("mirrorstats"):
            self.type = RequestType.MIRRORSTATS
            self.is_mirror_stats = True
        elif self.has_param("md5") or self.has_param("sha1") or self.has_param("sha256"):
            self.type = RequestType.CHECKSUM
            self.is_checksum = True
        else:
            self.type = RequestType.STANDARD

        self.is_pretty = self.has_param("pretty")

        self.secure_option = SecureOption.UNDEFINED
        if _header(headers or {}, "X-Forwarded-Proto").lower() == "https":
            self.secure_option = SecureOption.WITHTLS
        https = self.values.get("https")
        if https:
            if https[0] == "1":
                self.secure_option = SecureOption.WITHTLS
            elif https[0] == "0":
                self.secure_option = SecureOption.WITHOUTTLS

    def query_param(self, key: str) -> str:
        """Return the first value of the query parameter, or an empty string."""
        values = self.values.get(key)
        return values[0] if values else ""

    def has_param(self, key: str) -> bool:
        return key in self.values