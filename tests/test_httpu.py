"""Unit tests for HTTPU framing."""

import pytest

from httpu import build_msearch, parse_request, parse_search_response
from upnp_errors import FramingError

from .const import NOTIFY_ALIVE, SEARCH_REPLY


class TestParseRequest:
    """Test request-mode parsing used for NOTIFY."""

    def test_notify_headers_lowercased(self):
        req = parse_request(NOTIFY_ALIVE)
        assert req.method == "NOTIFY"
        assert req.target == "*"
        assert req.version == "HTTP/1.1"
        assert req.headers["nts"] == "ssdp:alive"
        assert req.headers["location"] == "http://192.168.1.1:5000/rootDesc.xml"
        assert all(name == name.lower() for name in req.headers)

    def test_header_without_space_after_colon(self):
        req = parse_request(b"NOTIFY * HTTP/1.1\r\nNTS:ssdp:byebye\r\n\r\n")
        assert req.headers["nts"] == "ssdp:byebye"

    def test_stops_at_blank_line(self):
        req = parse_request(b"NOTIFY * HTTP/1.1\r\nNT: a\r\n\r\nnot a header\r\n")
        assert req.headers == {"nt": "a"}

    def test_folded_header_continues_value(self):
        req = parse_request(b"NOTIFY * HTTP/1.1\r\nSERVER: Linux\r\n  UPnP/1.0\r\n\r\n")
        assert req.headers["server"] == "Linux UPnP/1.0"

    @pytest.mark.parametrize(
        "payload",
        [
            b"",
            b"garbage",
            b"NOTIFY *\r\n\r\n",
            b"notify * HTTP/1.1\r\n\r\n",
            b"NOTIFY * HTTX/1.1\r\n\r\n",
            b"NOTIFY * HTTP/1.1\r\nno colon here\r\n\r\n",
            b"NOTIFY * HTTP/1.1\r\n  folded first\r\n\r\n",
        ],
    )
    def test_malformed_raises_framing_error(self, payload):
        with pytest.raises(FramingError):
            parse_request(payload)


class TestParseSearchResponse:
    """Test response-mode parsing used for M-SEARCH replies."""

    def test_ok_reply(self):
        headers = parse_search_response(SEARCH_REPLY)
        assert headers["location"] == "http://192.168.1.1:5000/rootDesc.xml"
        assert headers["st"] == "urn:schemas-upnp-org:device:InternetGatewayDevice:1"
        assert headers["usn"].startswith("uuid:gw-1")

    def test_empty_value_is_skipped(self):
        headers = parse_search_response(SEARCH_REPLY)
        assert "ext" not in headers

    def test_splits_on_first_separator_only(self):
        headers = parse_search_response(b"HTTP/1.1 200 OK\r\nX-Note: a: b\r\n\r\n")
        assert headers == {"x-note": "a: b"}

    @pytest.mark.parametrize(
        "first_line",
        [b"HTTP/1.1 404 Not Found", b"HTTP/1.0 200 OK", b"http/1.1 200 ok", b"HTTP/1.1 200 OK "],
    )
    def test_non_exact_status_line_discarded(self, first_line):
        assert parse_search_response(first_line + b"\r\nLOCATION: http://x/\r\n\r\n") is None

    def test_nothing_after_blank_line(self):
        headers = parse_search_response(b"HTTP/1.1 200 OK\r\nST: a\r\n\r\nLOCATION: http://x/\r\n")
        assert headers == {"st": "a"}


class TestBuildMSearch:
    """Test the M-SEARCH payload."""

    def test_default_target_is_ssdp_all(self):
        assert b"\r\nST: ssdp:all\r\n" in build_msearch()

    def test_literal_layout(self):
        payload = build_msearch("urn:schemas-upnp-org:device:InternetGatewayDevice:1")
        assert payload == (
            b"M-SEARCH * HTTP/1.1\r\n"
            b"Host: 239.255.255.250:1900\r\n"
            b"ST: urn:schemas-upnp-org:device:InternetGatewayDevice:1\r\n"
            b'Man: "ssdp:discover"\r\n'
            b"MX: 2\r\n"
            b"\r\n"
        )
