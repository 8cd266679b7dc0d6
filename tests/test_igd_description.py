"""Unit tests for device description resolution."""

import httpx
import pytest

from igd_description import (
    DescriptionResolver,
    Gateway,
    find_device,
    normalize_location,
    parse_description,
    resolve_control_url,
)
from upnp_errors import ResolutionError, TransportError

from .const import LOCATION, WAN_DEVICE, description_xml


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestNormalizeLocation:
    """Test LOCATION normalisation used for duplicate suppression."""

    def test_default_http_port(self):
        assert normalize_location("http://192.168.1.1/desc.xml") == "http://192.168.1.1:80/desc.xml"

    def test_default_https_port(self):
        assert normalize_location("https://gw.local/desc.xml") == "https://gw.local:443/desc.xml"

    def test_explicit_port_kept(self):
        assert normalize_location(LOCATION) == "http://192.168.1.1:5000/rootDesc.xml"

    def test_same_location_different_spelling(self):
        assert normalize_location("http://192.168.1.1/d.xml") == normalize_location("http://192.168.1.1:80/d.xml")

    def test_no_host_rejected(self):
        with pytest.raises(ResolutionError):
            normalize_location("/rootDesc.xml")


class TestTraversal:
    """Test the three-level WANIPConnection lookup."""

    def test_control_url_joined_onto_url_base(self):
        root = parse_description(description_xml())
        assert resolve_control_url(root) == "http://192.168.1.1:5000/ctl"

    def test_missing_url_base_uses_location(self):
        root = parse_description(description_xml(url_base=None, control_url="ctl/IPConn"))
        assert resolve_control_url(root, LOCATION) == "http://192.168.1.1:5000/ctl/IPConn"

    def test_absolute_control_url_used_as_is(self):
        root = parse_description(description_xml(control_url="http://10.0.0.1:49000/upnp/control/wanip"))
        assert resolve_control_url(root) == "http://10.0.0.1:49000/upnp/control/wanip"

    def test_missing_wan_device(self):
        root = parse_description(description_xml(wan_device="urn:schemas-upnp-org:device:LANDevice:1"))
        with pytest.raises(ResolutionError, match="WANDevice"):
            resolve_control_url(root)

    def test_missing_connection_device(self):
        root = parse_description(description_xml(connection_device="urn:other:device:Thing:1"))
        with pytest.raises(ResolutionError, match="WANConnectionDevice"):
            resolve_control_url(root)

    def test_missing_service(self):
        root = parse_description(description_xml(service="urn:schemas-upnp-org:service:WANIPConnection:2"))
        with pytest.raises(ResolutionError, match="WANIPConnection"):
            resolve_control_url(root)

    def test_type_match_is_exact(self):
        root = parse_description(description_xml(wan_device=WAN_DEVICE + " "))
        device = root.find("{urn:schemas-upnp-org:device-1-0}device")
        # Whitespace around text is trimmed, but prefixes never match
        assert find_device(device, WAN_DEVICE) is not None
        assert find_device(device, "urn:schemas-upnp-org:device:WAN") is None

    def test_only_immediate_list_searched(self):
        root = parse_description(description_xml())
        device = root.find("{urn:schemas-upnp-org:device-1-0}device")
        # WANConnectionDevice lives one level deeper, under WANDevice
        assert find_device(device, "urn:schemas-upnp-org:device:WANConnectionDevice:1") is None

    def test_document_without_namespace(self):
        xml = description_xml().replace(' xmlns="urn:schemas-upnp-org:device-1-0"', "")
        assert resolve_control_url(parse_description(xml)) == "http://192.168.1.1:5000/ctl"

    def test_invalid_xml(self):
        with pytest.raises(ResolutionError):
            parse_description("<root><device></root>")


class TestDescriptionResolver:
    """Test fetching and resolving a description location."""

    @pytest.mark.asyncio
    async def test_resolve_gateway(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text=description_xml())

        async with _client(handler) as client:
            gateway = await DescriptionResolver(client).resolve(LOCATION)

        assert gateway == Gateway("192.168.1.1", 5000, "/ctl")
        assert gateway.url == "http://192.168.1.1:5000/ctl"
        assert requests[0].method == "GET"
        assert str(requests[0].url) == LOCATION

    @pytest.mark.asyncio
    async def test_control_url_without_port_defaults_to_80(self):
        xml = description_xml(url_base="http://192.168.0.254/")

        async with _client(lambda r: httpx.Response(200, text=xml)) as client:
            gateway = await DescriptionResolver(client).resolve(LOCATION)

        assert (gateway.host, gateway.port, gateway.path) == ("192.168.0.254", 80, "/ctl")

    @pytest.mark.asyncio
    async def test_non_200_fails(self):
        async with _client(lambda r: httpx.Response(404)) as client:
            with pytest.raises(TransportError, match="404"):
                await DescriptionResolver(client).resolve(LOCATION)

    @pytest.mark.asyncio
    async def test_connection_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(TransportError):
                await DescriptionResolver(client).resolve(LOCATION)

    @pytest.mark.asyncio
    async def test_missing_wan_device_never_returns(self):
        xml = description_xml(wan_device="urn:schemas-upnp-org:device:LANDevice:1")

        async with _client(lambda r: httpx.Response(200, text=xml)) as client:
            with pytest.raises(ResolutionError):
                await DescriptionResolver(client).resolve(LOCATION)

    def test_claim_once_per_location(self):
        resolver = DescriptionResolver(client=None)
        assert resolver.claim("http://192.168.1.1/desc.xml") == "http://192.168.1.1:80/desc.xml"
        assert resolver.claim("http://192.168.1.1:80/desc.xml") is None
        assert resolver.claim("http://192.168.1.2/desc.xml") is not None
