"""
Exceptions raised by the UPnP gateway control point.

Everything derives from UPnPError so callers can catch one type. FramingError
never leaves the SSDP layer: malformed multicast traffic is dropped there.
"""

from __future__ import annotations

from typing import Optional


class UPnPError(Exception):
    pass


class FramingError(UPnPError):
    """Datagram payload is not a well-formed HTTPU message."""


class TransportError(UPnPError):
    """Socket, connect or HTTP-level failure."""


class ResolutionError(UPnPError):
    """Expected device/service node or required SOAP argument is missing."""


class DiscoveryTimeout(UPnPError, TimeoutError):
    pass


class ProtocolFault(UPnPError):
    """
    Gateway rejected a SOAP action.

    status is the HTTP status of the control response. error_code and
    description are filled from the UPnP fault body when the gateway sent one.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        error_code: Optional[int] = None,
        description: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_code = error_code
        self.description = description


class InvalidArgs(ProtocolFault):
    def __init__(self, status: Optional[int] = 402, description: Optional[str] = None) -> None:
        super().__init__("Invalid Args", status=status, error_code=402, description=description)


class ActionFailed(ProtocolFault):
    def __init__(self, status: Optional[int] = 501, description: Optional[str] = None) -> None:
        super().__init__("Action Failed", status=status, error_code=501, description=description)
