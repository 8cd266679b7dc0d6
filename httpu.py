"""
HTTPU framing - HTTP-style messages carried in UDP datagrams.

SSDP reuses HTTP framing for two different payloads, so there are two parsers:

- parse_request(): full request line + headers, used for multicast NOTIFY.
- parse_search_response(): line-based status/header block, used for unicast
  M-SEARCH replies. Anything but an exact "HTTP/1.1 200 OK" is discarded.

build_msearch() produces the M-SEARCH payload sent by a search session.
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional

from upnp_errors import FramingError

SSDP_MCAST_GRP = "239.255.255.250"
SSDP_MCAST_PORT = 1900
SSDP_ALL = "ssdp:all"
SEARCH_MX = 2

STATUS_OK = "HTTP/1.1 200 OK"

_LINE_SPLIT = re.compile(r"\r?\n")
_METHOD = re.compile(r"^[A-Z][A-Z0-9_-]*$")
_VERSION = re.compile(r"^HTTP/\d+\.\d+$")


class HttpuRequest(NamedTuple):
    method: str
    target: str
    version: str
    headers: dict[str, str]


# -----------------------------------------------------------------------------
# Request mode (NOTIFY)
# -----------------------------------------------------------------------------


def parse_request(data: bytes) -> HttpuRequest:
    """
    Parse a datagram as an HTTP request (request line + header block).

    Header names are lower-cased. Raises FramingError if the request line or
    any header line is malformed.
    """
    text = data.decode("utf-8", errors="ignore")
    lines = _LINE_SPLIT.split(text)
    parts = lines[0].split(" ")
    if len(parts) != 3:
        raise FramingError(f"Malformed request line: {lines[0][:100]!r}")
    method, target, version = parts
    if not _METHOD.match(method) or not target or not _VERSION.match(version):
        raise FramingError(f"Malformed request line: {lines[0][:100]!r}")

    headers: dict[str, str] = {}
    last_name: Optional[str] = None
    for line in lines[1:]:
        if not line:
            break
        if line[0] in " \t":
            # Obsolete line folding continues the previous header value
            if last_name is None:
                raise FramingError("Continuation line before any header")
            headers[last_name] = f"{headers[last_name]} {line.strip()}"
            continue
        name, sep, value = line.partition(":")
        name = name.strip()
        if not sep or not name or " " in name:
            raise FramingError(f"Malformed header line: {line[:100]!r}")
        last_name = name.lower()
        headers[last_name] = value.strip()
    return HttpuRequest(method, target, version, headers)


# -----------------------------------------------------------------------------
# Response mode (M-SEARCH replies)
# -----------------------------------------------------------------------------


def parse_search_response(data: bytes) -> Optional[dict[str, str]]:
    """
    Parse a unicast M-SEARCH reply into a lower-cased header dict.

    Returns None unless the first line is exactly "HTTP/1.1 200 OK". Lines
    without a ": " separator (or with an empty value) are skipped; nothing
    after the first blank line is read.
    """
    lines = data.decode("utf-8", errors="ignore").split("\r\n")
    if lines[0] != STATUS_OK:
        return None
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            break
        name, sep, value = line.partition(": ")
        if sep and value:
            headers[name.lower()] = value
    return headers


def build_msearch(st: str = SSDP_ALL, mx: int = SEARCH_MX) -> bytes:
    """Build the M-SEARCH request payload for search target st."""
    return "\r\n".join([
        "M-SEARCH * HTTP/1.1",
        f"Host: {SSDP_MCAST_GRP}:{SSDP_MCAST_PORT}",
        f"ST: {st}",
        'Man: "ssdp:discover"',
        f"MX: {mx}",
        "", "",
    ]).encode("utf-8")
