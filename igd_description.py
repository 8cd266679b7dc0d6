"""
IGD device description resolution.

Fetches the description document named by an SSDP LOCATION header and walks
root device -> WANDevice -> WANConnectionDevice -> WANIPConnection service to
find the control URL. Each step looks only at the immediate deviceList /
serviceList of the current node and takes the first exact type match.

Usage:
    async with httpx.AsyncClient(timeout=5.0) as client:
        resolver = DescriptionResolver(client)
        gateway = await resolver.resolve("http://192.168.1.1:5000/rootDesc.xml")
        print(gateway.url)
"""

from __future__ import annotations

import logging
import urllib.parse
import xml.etree.ElementTree as ET
from typing import NamedTuple, Optional

import httpx

from upnp_errors import ResolutionError, TransportError

_logger = logging.getLogger(__name__)

IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"
WAN_DEVICE_TYPE = "urn:schemas-upnp-org:device:WANDevice:1"
WAN_CONNECTION_DEVICE_TYPE = "urn:schemas-upnp-org:device:WANConnectionDevice:1"
WAN_IP_CONNECTION_TYPE = "urn:schemas-upnp-org:service:WANIPConnection:1"

_DEFAULT_PORTS = {"http": 80, "https": 443}


class Gateway(NamedTuple):
    """Resolved WANIPConnection control endpoint."""

    host: str
    port: int
    path: str

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    @property
    def url(self) -> str:
        return f"http://{self.netloc}{self.path}"


# -----------------------------------------------------------------------------
# URL helpers
# -----------------------------------------------------------------------------


def _split_url(url: str) -> tuple[str, str, int, str]:
    """Return (scheme, host, port, path) with the port defaulted by scheme."""
    parts = urllib.parse.urlsplit(url.strip())
    scheme = parts.scheme.lower()
    try:
        port = parts.port
    except ValueError as e:
        raise ResolutionError(f"Invalid URL {url!r}: {e}") from e
    if not parts.hostname:
        raise ResolutionError(f"Invalid URL {url!r}: no host")
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"
    return scheme, parts.hostname, port or _DEFAULT_PORTS.get(scheme, 80), path


def normalize_location(location: str) -> str:
    """Canonical form of a LOCATION URL, used as the pending-fetch key."""
    scheme, host, port, path = _split_url(location)
    if ":" in host:
        host = f"[{host}]"
    return f"{scheme}://{host}:{port}{path}"


def gateway_from_url(control_url: str) -> Gateway:
    _, host, port, path = _split_url(control_url)
    return Gateway(host, port, path)


# -----------------------------------------------------------------------------
# Description document traversal
# -----------------------------------------------------------------------------


def _local(tag: str) -> str:
    """Element tag without its {namespace} prefix."""
    return tag.rsplit("}", 1)[-1]


def _child(node: ET.Element, name: str) -> Optional[ET.Element]:
    for child in node:
        if _local(child.tag) == name:
            return child
    return None


def _child_text(node: ET.Element, name: str) -> str:
    child = _child(node, name)
    if child is None or child.text is None:
        return ""
    return child.text.strip()


def find_by_type(node: ET.Element, kind: str, needle: str) -> Optional[ET.Element]:
    """
    First <kind> element directly under node's <kindList> whose <kindType>
    equals needle exactly. kind is "device" or "service".
    """
    items = _child(node, f"{kind}List")
    if items is None:
        return None
    for item in items:
        if _local(item.tag) == kind and _child_text(item, f"{kind}Type") == needle:
            return item
    return None


def find_device(node: ET.Element, device_type: str) -> Optional[ET.Element]:
    return find_by_type(node, "device", device_type)


def find_service(node: ET.Element, service_type: str) -> Optional[ET.Element]:
    return find_by_type(node, "service", service_type)


def parse_description(text: str) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as e:
        raise ResolutionError(f"Invalid device description: {e}") from e


def resolve_control_url(root: ET.Element, location: str = "") -> str:
    """
    Walk a parsed description document to the WANIPConnection control URL.

    The control URL is joined onto URLBase, or onto location when the
    document has no URLBase. Raises ResolutionError if any level is missing.
    """
    device = _child(root, "device")
    if device is None:
        raise ResolutionError("Device description has no root device")
    wan_device = find_device(device, WAN_DEVICE_TYPE)
    if wan_device is None:
        raise ResolutionError(f"{WAN_DEVICE_TYPE} not found")
    conn_device = find_device(wan_device, WAN_CONNECTION_DEVICE_TYPE)
    if conn_device is None:
        raise ResolutionError(f"{WAN_CONNECTION_DEVICE_TYPE} not found")
    service = find_service(conn_device, WAN_IP_CONNECTION_TYPE)
    if service is None:
        raise ResolutionError(f"{WAN_IP_CONNECTION_TYPE} not found")

    control_url = _child_text(service, "controlURL")
    if not control_url:
        raise ResolutionError(f"{WAN_IP_CONNECTION_TYPE} has no controlURL")
    base_url = _child_text(root, "URLBase") or location
    return urllib.parse.urljoin(base_url, control_url)


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------


class DescriptionResolver:
    """
    Fetches and resolves device descriptions for one discovery attempt.

    claim() guards against fetching the same location twice when a device
    answers a search more than once.
    """

    def __init__(self, client: httpx.AsyncClient, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.logger = logger or _logger
        self._pending: set[str] = set()

    def claim(self, location: str) -> Optional[str]:
        """Mark location as in progress. Returns None if it already was."""
        key = normalize_location(location)
        if key in self._pending:
            return None
        self._pending.add(key)
        return key

    async def fetch(self, location: str) -> str:
        try:
            r = await self.client.get(location)
        except httpx.HTTPError as e:
            raise TransportError(f"Fetch {location}: {e}") from e
        if r.status_code != 200:
            raise TransportError(f"Unexpected response status code: {r.status_code}")
        return r.text

    async def resolve(self, location: str) -> Gateway:
        """Fetch location and return the gateway's WANIPConnection endpoint."""
        text = await self.fetch(location)
        root = parse_description(text)
        control_url = resolve_control_url(root, location)
        gateway = gateway_from_url(control_url)
        self.logger.debug("Resolved %s -> %s", location, gateway.url)
        return gateway
