"""
SSDP control point - passive NOTIFY listener and active M-SEARCH sessions.

ControlPoint owns one multicast receiver joined to 239.255.255.250:1900 for
its whole lifetime and turns NOTIFY traffic into DeviceAvailable /
DeviceUnavailable / DeviceUpdated events. search() launches a SearchSession
whose unicast replies become DeviceFound events. Events go to every callback
registered with add_listener().

Usage:
    cp = ControlPoint()
    remove = cp.add_listener(lambda event: print(event))
    await cp.start()
    await cp.search("urn:schemas-upnp-org:device:InternetGatewayDevice:1")
    ...
    remove()
    cp.close()
"""

from __future__ import annotations

import asyncio
import logging
import socket
import struct
from typing import Callable, NamedTuple, Optional, Union

from httpu import (
    SEARCH_MX,
    SSDP_ALL,
    SSDP_MCAST_GRP,
    SSDP_MCAST_PORT,
    build_msearch,
    parse_request,
    parse_search_response,
)
from upnp_errors import FramingError, TransportError

_logger = logging.getLogger(__name__)

SSDP_ALIVE = "ssdp:alive"
SSDP_BYEBYE = "ssdp:byebye"
SSDP_UPDATE = "ssdp:update"

MULTICAST_TTL = 2


# -----------------------------------------------------------------------------
# Discovery events
# -----------------------------------------------------------------------------


class DeviceAvailable(NamedTuple):
    headers: dict[str, str]
    addr: Optional[tuple] = None


class DeviceUnavailable(NamedTuple):
    headers: dict[str, str]
    addr: Optional[tuple] = None


class DeviceUpdated(NamedTuple):
    headers: dict[str, str]
    addr: Optional[tuple] = None


class DeviceFound(NamedTuple):
    headers: dict[str, str]
    addr: Optional[tuple] = None


DiscoveryEvent = Union[DeviceAvailable, DeviceUnavailable, DeviceUpdated, DeviceFound]
Listener = Callable[[DiscoveryEvent], None]

# NOTIFY sub-type to event
_NTS_EVENTS = {
    SSDP_ALIVE: DeviceAvailable,
    SSDP_BYEBYE: DeviceUnavailable,
    SSDP_UPDATE: DeviceUpdated,
}


def _udp_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.setblocking(False)
    return sock


# -----------------------------------------------------------------------------
# Datagram protocols
# -----------------------------------------------------------------------------


class _NotifyProtocol(asyncio.DatagramProtocol):
    def __init__(self, control_point: "ControlPoint") -> None:
        self.control_point = control_point

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.control_point._on_notify_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.control_point.logger.debug("SSDP receiver error: %s", exc)


class _SearchProtocol(asyncio.DatagramProtocol):
    def __init__(self, session: "SearchSession") -> None:
        self.session = session

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self.session._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.session.logger.debug("M-SEARCH receiver error: %s", exc)


# -----------------------------------------------------------------------------
# Search session
# -----------------------------------------------------------------------------


class SearchSession:
    """
    One M-SEARCH exchange. The request is sent once from an ephemeral port and
    replies are collected on a receiver bound to that same port until MX+1
    seconds have passed.
    """

    def __init__(
        self,
        st: str,
        on_response: Callable[[dict[str, str], tuple], None],
        logger: Optional[logging.Logger] = None,
        mx: int = SEARCH_MX,
        interface_ip: Optional[str] = None,
        on_close: Optional[Callable[["SearchSession"], None]] = None,
    ) -> None:
        self.st = st
        self.mx = mx
        self.payload = build_msearch(st, mx)
        self.interface_ip = interface_ip
        self.logger = logger or _logger
        self.port: Optional[int] = None
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._on_response = on_response
        self._on_close = on_close
        self._close_handle: Optional[asyncio.TimerHandle] = None
        self._done = False

    @property
    def closed(self) -> bool:
        return self._done

    async def open(self) -> None:
        """Bind sender and receiver, send the request and start the window timer."""
        loop = asyncio.get_running_loop()
        sender = _udp_socket()
        receiver = None
        try:
            sender.bind(("0.0.0.0", 0))
            self.port = sender.getsockname()[1]
            sender.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MULTICAST_TTL)
            if self.interface_ip:
                sender.setsockopt(
                    socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(self.interface_ip)
                )
            # Replies come back to the sender's port
            receiver = _udp_socket()
            receiver.bind(("0.0.0.0", self.port))
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: _SearchProtocol(self),
                sock=receiver,
            )
            sender.sendto(self.payload, (SSDP_MCAST_GRP, SSDP_MCAST_PORT))
        except OSError as e:
            if self.transport is None and receiver is not None:
                receiver.close()
            self.close()
            raise TransportError(f"M-SEARCH failed: {e}") from e
        finally:
            sender.close()

        self.logger.debug("M-SEARCH sent from port %d (ST=%s)", self.port, self.st)
        self._close_handle = loop.call_later(self.mx + 1, self.close)

    def _on_datagram(self, data: bytes, addr: tuple) -> None:
        if self.closed:
            return
        headers = parse_search_response(data)
        if headers is None:
            self.logger.debug("M-SEARCH reply from %s discarded (not 200 OK)", addr)
            return
        self.logger.debug("M-SEARCH reply from %s: %s", addr, headers.get("location"))
        self._on_response(headers, addr)

    def close(self) -> None:
        """Close the receiver; replies still in flight are dropped."""
        if self._done:
            return
        self._done = True
        if self._close_handle:
            self._close_handle.cancel()
            self._close_handle = None
        if self.transport:
            self.transport.close()
            self.transport = None
        if self._on_close:
            self._on_close(self)


# -----------------------------------------------------------------------------
# Control point
# -----------------------------------------------------------------------------


class ControlPoint:
    """
    SSDP engine: standing multicast receiver for NOTIFY plus ad-hoc searches.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        interface_ip: Optional[str] = None,
    ) -> None:
        self.logger = logger or _logger
        self.interface_ip = interface_ip or None
        self.transport: Optional[asyncio.DatagramTransport] = None
        self._listeners: list[Listener] = []
        self._sessions: set[SearchSession] = set()

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register callback for discovery events. Returns a function that removes it."""
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    async def start(self) -> None:
        """Bind UDP 1900 and join the SSDP multicast group."""
        if self.transport:
            return
        sock = _udp_socket()
        try:
            sock.bind(("0.0.0.0", SSDP_MCAST_PORT))
            if self.interface_ip:
                mreq = struct.pack(
                    "=4s4s", socket.inet_aton(SSDP_MCAST_GRP), socket.inet_aton(self.interface_ip)
                )
            else:
                mreq = struct.pack("=4sI", socket.inet_aton(SSDP_MCAST_GRP), socket.INADDR_ANY)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            loop = asyncio.get_running_loop()
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: _NotifyProtocol(self),
                sock=sock,
            )
        except OSError as e:
            sock.close()
            raise TransportError(f"SSDP requires UDP port {SSDP_MCAST_PORT}: {e}") from e
        self.logger.debug("SSDP listening on UDP %d", SSDP_MCAST_PORT)

    def _on_notify_datagram(self, data: bytes, addr: tuple) -> None:
        try:
            req = parse_request(data)
        except FramingError as e:
            self.logger.debug("SSDP datagram from %s dropped: %s", addr, e)
            return
        if req.method != "NOTIFY":
            return
        headers = req.headers
        self.logger.debug(
            "NOTIFY %s NT=%s USN=%s", headers.get("nts"), headers.get("nt"), headers.get("usn")
        )
        event_cls = _NTS_EVENTS.get(headers.get("nts", ""))
        if event_cls:
            self._emit(event_cls(headers, addr))

    def _on_search_response(self, headers: dict[str, str], addr: tuple) -> None:
        self._emit(DeviceFound(headers, addr))

    def _emit(self, event: DiscoveryEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                self.logger.warning("SSDP listener failed on %s", type(event).__name__, exc_info=True)

    async def search(self, st: str = SSDP_ALL) -> SearchSession:
        """Send one M-SEARCH for st; replies arrive as DeviceFound events."""
        session = SearchSession(
            st,
            self._on_search_response,
            logger=self.logger,
            interface_ip=self.interface_ip,
            on_close=self._sessions.discard,
        )
        self._sessions.add(session)
        await session.open()
        return session

    def close(self) -> None:
        """Release the multicast receiver and any open search sessions."""
        for session in list(self._sessions):
            session.close()
        if self.transport:
            self.transport.close()
            self.transport = None
        self._listeners.clear()
