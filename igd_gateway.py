"""
WANIPConnection SOAP client for a resolved gateway.

Usage:
    async with GatewayClient(gateway) as gw:
        info = await gw.external_ip_address()
        await gw.add_port_mapping("TCP", 8080, 80, "192.168.1.50", "web")
"""

from __future__ import annotations

import logging
import re
from typing import Any, NamedTuple, Optional

import httpx

from igd_description import WAN_IP_CONNECTION_TYPE, Gateway
from upnp_errors import ActionFailed, InvalidArgs, ProtocolFault, ResolutionError, TransportError

_logger = logging.getLogger(__name__)

SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING = "http://schemas.xmlsoap.org/soap/encoding/"
SOAP_ENV_PRE = (
    '<?xml version="1.0"?>\n'
    f'<s:Envelope xmlns:s="{SOAP_ENV}" s:encodingStyle="{SOAP_ENCODING}"><s:Body>'
)
SOAP_ENV_POST = "</s:Body></s:Envelope>"

_FAULT_CODE = re.compile(r"<(?:\w+:)?errorCode>\s*(\d+)\s*</(?:\w+:)?errorCode>")
_FAULT_DESCRIPTION = re.compile(r"<(?:\w+:)?errorDescription>(.*?)</(?:\w+:)?errorDescription>", re.S)


class ConnectionTypeInfo(NamedTuple):
    current_type: str
    possible_types: str


class ExternalIPAddress(NamedTuple):
    address: str


# -----------------------------------------------------------------------------
# Envelope and response helpers
# -----------------------------------------------------------------------------


def _escape_xml_text(s: Any) -> str:
    """Escape &, <, >, " for use in XML element text."""
    return (
        str(s)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def build_action_body(
    action: str,
    args: list[tuple[str, Any]],
    service_type: str = WAN_IP_CONNECTION_TYPE,
) -> str:
    """<u:Action xmlns:u="service_type"> with one child element per argument."""
    inner = "".join(f"<{name}>{_escape_xml_text(value)}</{name}>" for name, value in args)
    return f'<u:{action} xmlns:u="{service_type}">{inner}</u:{action}>'


def build_envelope(body: str) -> str:
    return SOAP_ENV_PRE + body + SOAP_ENV_POST


def _parse_fault(body: str) -> tuple[Optional[int], Optional[str]]:
    """UPnP errorCode / errorDescription from a SOAP fault body, if present."""
    code_match = _FAULT_CODE.search(body or "")
    desc_match = _FAULT_DESCRIPTION.search(body or "")
    code = int(code_match.group(1)) if code_match else None
    desc = desc_match.group(1).strip() if desc_match else None
    return code, desc


def check_response(status: int, body: str) -> None:
    """
    Raise the fault matching a control response; return if it succeeded.

    402 -> InvalidArgs, 501 -> ActionFailed, 200 -> success. A 500 carrying a
    UPnP fault is classified by its errorCode. Anything else is a
    ProtocolFault.
    """
    if status == 200:
        return
    if status == 402:
        raise InvalidArgs()
    if status == 501:
        raise ActionFailed()
    code, desc = _parse_fault(body)
    if status == 500 and code is not None:
        if code == 402:
            raise InvalidArgs(status=status, description=desc)
        if code == 501:
            raise ActionFailed(status=status, description=desc)
        raise ProtocolFault(f"UPnP error {code}: {desc}", status=status, error_code=code, description=desc)
    raise ProtocolFault(
        f"Unexpected response status {status}", status=status, error_code=code, description=desc
    )


class ArgumentExtractor:
    """Pulls one named output argument out of a SOAP response body."""

    def extract(self, body: str, name: str) -> Optional[str]:
        raise NotImplementedError


class RegexArgumentExtractor(ArgumentExtractor):
    """First match of <Name>value</Name>, non-greedy, on a single line."""

    def extract(self, body: str, name: str) -> Optional[str]:
        tag = re.escape(name)
        match = re.search(f"<{tag}>(.+?)</{tag}>", body)
        return match.group(1) if match else None


# -----------------------------------------------------------------------------
# Gateway client
# -----------------------------------------------------------------------------


class GatewayClient:
    """Invokes WANIPConnection actions on one gateway."""

    def __init__(
        self,
        gateway: Gateway,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
        logger: Optional[logging.Logger] = None,
        extractor: Optional[ArgumentExtractor] = None,
    ) -> None:
        self.gateway = gateway
        self.timeout = timeout
        self.logger = logger or _logger
        self.extractor = extractor or RegexArgumentExtractor()
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @property
    def host_header(self) -> str:
        if self.gateway.port == 80:
            return self.gateway.netloc.rsplit(":", 1)[0]
        return self.gateway.netloc

    async def _post_soap(self, action: str, args: list[tuple[str, Any]]) -> str:
        """POST action to the control URL and return the response body."""
        body = build_envelope(build_action_body(action, args)).encode("utf-8")
        headers = {
            "Host": self.host_header,
            "SOAPACTION": f'"{WAN_IP_CONNECTION_TYPE}#{action}"',
            "Content-Type": "text/xml",
            "Content-Length": str(len(body)),
        }
        try:
            r = await self._get_client().post(self.gateway.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(f"{action} to {self.gateway.url}: {e}") from e
        self.logger.debug("%s -> %d", action, r.status_code)
        check_response(r.status_code, r.text)
        return r.text

    def _get_arg(self, body: str, name: str, required: bool = True) -> Optional[str]:
        value = self.extractor.extract(body, name)
        if value is None and required:
            raise ResolutionError(f"Invalid XML: Argument '{name}' not given.")
        return value

    async def connection_type_info(self) -> ConnectionTypeInfo:
        """Current connection type and the types the gateway allows."""
        body = await self._post_soap("GetConnectionTypeInfo", [])
        return ConnectionTypeInfo(
            current_type=self._get_arg(body, "NewConnectionType"),
            possible_types=self._get_arg(body, "NewPossibleConnectionTypes"),
        )

    async def external_ip_address(self) -> ExternalIPAddress:
        body = await self._post_soap("GetExternalIPAddress", [])
        return ExternalIPAddress(address=self._get_arg(body, "NewExternalIPAddress"))

    async def add_port_mapping(
        self,
        protocol: str,
        external_port: int,
        internal_port: int,
        internal_client: str,
        description: str,
        lease_duration: int = 0,
    ) -> None:
        """Map external_port on the gateway to internal_client:internal_port."""
        await self._post_soap("AddPortMapping", [
            ("NewRemoteHost", ""),
            ("NewExternalPort", external_port),
            ("NewProtocol", protocol.upper()),
            ("NewInternalPort", internal_port),
            ("NewInternalClient", internal_client),
            ("NewEnabled", 1),
            ("NewPortMappingDescription", description),
            ("NewLeaseDuration", lease_duration),
        ])
        self.logger.info(
            "Mapped %s %d -> %s:%d (%s)", protocol.upper(), external_port, internal_client, internal_port, description
        )

    async def delete_port_mapping(self, protocol: str, external_port: int) -> None:
        await self._post_soap("DeletePortMapping", [
            ("NewRemoteHost", ""),
            ("NewExternalPort", external_port),
            ("NewProtocol", protocol.upper()),
        ])
        self.logger.info("Removed mapping %s %d", protocol.upper(), external_port)
