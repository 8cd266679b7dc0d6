"""
Gateway discovery - search for an IGD and resolve the first candidate.

A discovery attempt settles exactly once: with the first resolved gateway,
with the first resolution error, or with DiscoveryTimeout. Candidates,
resolutions and timer callbacks arriving after that are ignored.

Usage:
    gateway = await discover_gateway(timeout=5.0)
    async with gateway:
        print(await gateway.external_ip_address())
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx

from igd_description import IGD_DEVICE_TYPE, DescriptionResolver, Gateway
from igd_gateway import GatewayClient
from ssdp_control_point import ControlPoint, DeviceFound, DiscoveryEvent, SearchSession
from upnp_errors import DiscoveryTimeout, ResolutionError, TransportError

_logger = logging.getLogger(__name__)


class GatewayDiscovery:
    """One discovery attempt over a ControlPoint."""

    def __init__(
        self,
        control_point: ControlPoint,
        resolver: DescriptionResolver,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.control_point = control_point
        self.resolver = resolver
        self.logger = logger or _logger
        self._future: Optional[asyncio.Future] = None
        self._settled = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def settled(self) -> bool:
        return self._settled

    def handle_event(self, event: DiscoveryEvent) -> None:
        """Listener for ControlPoint events; only DeviceFound matters here."""
        if self._settled or not isinstance(event, DeviceFound):
            return
        location = event.headers.get("location")
        if not location:
            self.logger.debug("Search reply without LOCATION from %s", event.addr)
            return
        try:
            key = self.resolver.claim(location)
        except ResolutionError as e:
            self.logger.debug("Ignoring candidate: %s", e)
            return
        if key is None:
            self.logger.debug("Already resolving %s", location)
            return
        task = asyncio.get_running_loop().create_task(self._resolve(location))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, location: str) -> None:
        try:
            gateway = await self.resolver.resolve(location)
        except Exception as e:
            self._settle(error=e)
            return
        self._settle(gateway=gateway)

    def _on_timeout(self, timeout: float) -> None:
        self._timer = None
        self._settle(error=DiscoveryTimeout(f"No gateway found within {timeout:g}s"))

    def _settle(self, gateway: Optional[Gateway] = None, error: Optional[Exception] = None) -> None:
        if self._settled:
            self.logger.debug("Discovery already settled, ignoring %s", error or gateway)
            return
        self._settled = True
        if self._timer:
            self._timer.cancel()
            self._timer = None
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(gateway)

    async def run(self, timeout: Optional[float]) -> Gateway:
        """Search for an IGD and wait for the attempt to settle."""
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        remove_listener = self.control_point.add_listener(self.handle_event)
        session: Optional[SearchSession] = None
        try:
            if timeout:
                self._timer = loop.call_later(timeout, self._on_timeout, timeout)
            session = await self.control_point.search(IGD_DEVICE_TYPE)
            return await self._future
        finally:
            self._settled = True
            remove_listener()
            if self._timer:
                self._timer.cancel()
                self._timer = None
            for task in list(self._tasks):
                task.cancel()
            # search() can fail after the timer already settled the future
            if not self._future.done():
                self._future.cancel()
            elif not self._future.cancelled():
                self._future.exception()
            if session:
                session.close()


async def discover_gateway(
    timeout: Optional[float] = 5.0,
    *,
    control_point: Optional[ControlPoint] = None,
    client: Optional[httpx.AsyncClient] = None,
    interface_ip: Optional[str] = None,
    http_timeout: float = 5.0,
    logger: Optional[logging.Logger] = None,
) -> GatewayClient:
    """
    Discover the local Internet Gateway Device.

    Returns a GatewayClient bound to its WANIPConnection control URL. Raises
    DiscoveryTimeout, ResolutionError or TransportError. A ControlPoint and
    HTTP client are created and closed here unless passed in.
    """
    logger = logger or _logger
    owns_control_point = control_point is None
    if control_point is None:
        control_point = ControlPoint(logger=logger, interface_ip=interface_ip)
        try:
            await control_point.start()
        except TransportError as e:
            logger.warning("SSDP NOTIFY listener unavailable, using search replies only: %s", e)
    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=http_timeout)
    try:
        discovery = GatewayDiscovery(control_point, DescriptionResolver(http_client, logger), logger)
        gateway = await discovery.run(timeout)
    finally:
        if owns_control_point:
            control_point.close()
        if owns_client:
            await http_client.aclose()

    logger.info("Found gateway at %s", gateway.url)
    return GatewayClient(gateway, client=client, timeout=http_timeout, logger=logger)
