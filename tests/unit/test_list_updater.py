"""
Unit tests for list download and parsing.
"""

import base64

import pytest
import requests

from gateway_config import parse_settings
from gateway_errors import ListUpdateError
from list_updater import (
    fetch_text,
    is_valid_domain,
    parse_apnic,
    parse_chnlist,
    parse_gfwlist,
    parse_gfwlist_rule,
    update_chnroute,
    update_gfwlist,
    write_list,
)

APNIC_SAMPLE = """\
2|apnic|20240101|1000|19830613|20240101|+1000
apnic|*|ipv4|*|500|summary
apnic|CN|ipv4|1.0.1.0|256|20110414|allocated
apnic|CN|ipv4|1.0.8.0|2048|20110412|allocated
apnic|CN|ipv4|1.1.0.0|768|20110414|assigned
apnic|JP|ipv4|1.0.16.0|4096|20110412|allocated
apnic|CN|ipv6|2400:3200::|32|20110412|allocated
apnic|CN|ipv4|1.2.0.0|256|20110412|available
"""

GFWLIST_SAMPLE = """\
[AutoProxy 0.2.9]
! Checksum: abc
||google.com
|https://twitter.com/path
.youtube.com
@@||cn.example.com
/^https?:\\/\\/[^\\/]+blogspot\\.(.*)/
||www.*.example.com
example.net/some/path
"""


class FakeResponse:
    def __init__(self, text="", status_code=200):
        self.text = text
        self.status_code = status_code


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, timeout=None, headers=None):
        self.requests.append((url, timeout, headers))
        if self.error:
            raise self.error
        return self.response


class TestFetchText:
    """HTTP download errors map to ListUpdateError."""

    def test_success(self):
        session = FakeSession(FakeResponse("payload"))
        assert fetch_text("https://example.org/list", timeout=5, session=session) == "payload"
        url, timeout, headers = session.requests[0]
        assert timeout == 5
        assert "User-Agent" in headers

    def test_http_error(self):
        session = FakeSession(FakeResponse(status_code=404))
        with pytest.raises(ListUpdateError, match="HTTP 404"):
            fetch_text("https://example.org/list", session=session)

    def test_timeout(self):
        session = FakeSession(error=requests.exceptions.Timeout())
        with pytest.raises(ListUpdateError, match="timed out"):
            fetch_text("https://example.org/list", session=session)

    def test_connection_error(self):
        session = FakeSession(error=requests.exceptions.ConnectionError("refused"))
        with pytest.raises(ListUpdateError, match="download failed"):
            fetch_text("https://example.org/list", session=session)


class TestParseApnic:
    def test_country_and_status_filter(self):
        ipv4, ipv6 = parse_apnic(APNIC_SAMPLE)
        assert "1.0.1.0/24" in ipv4
        assert "1.0.8.0/21" in ipv4
        assert not any(cidr.startswith("1.0.16.") for cidr in ipv4)
        assert not any(cidr.startswith("1.2.0.") for cidr in ipv4)
        assert ipv6 == ["2400:3200::/32"]

    def test_non_power_of_two_count(self):
        ipv4, _ = parse_apnic(APNIC_SAMPLE)
        # 768 addresses = /23 + /24
        assert "1.1.0.0/23" in ipv4
        assert "1.1.2.0/24" in ipv4


class TestParseGfwlist:
    @pytest.mark.parametrize("rule,domain", [
        ("||google.com", "google.com"),
        ("|https://twitter.com/path", "twitter.com"),
        (".youtube.com", "youtube.com"),
        ("example.net/some/path", "example.net"),
        ("@@||cn.example.com", None),
        ("! comment", None),
        ("[AutoProxy 0.2.9]", None),
        ("/^regex$/", None),
        ("||www.*.example.com", None),
        ("||192.168.1.1", None),
    ])
    def test_rule(self, rule, domain):
        assert parse_gfwlist_rule(rule) == domain

    def test_base64_document(self):
        encoded = base64.b64encode(GFWLIST_SAMPLE.encode()).decode()
        # upstream wraps the base64 text at 64 columns
        wrapped = "\n".join(encoded[i:i + 64] for i in range(0, len(encoded), 64))
        assert parse_gfwlist(wrapped) == ["example.net", "google.com", "twitter.com", "youtube.com"]

    def test_invalid_base64(self):
        with pytest.raises(ListUpdateError):
            parse_gfwlist("@@not base64@@")


def test_parse_chnlist():
    text = "server=/baidu.com/114.114.114.114\nserver=/QQ.com/114.114.114.114\n#server=/x/\njunk\n"
    assert parse_chnlist(text) == ["baidu.com", "qq.com"]


@pytest.mark.parametrize("domain,valid", [
    ("example.com", True),
    ("a-b.example.org", True),
    ("localhost", False),
    ("-bad.com", False),
    ("1.2.3.4", False),
    ("ex ample.com", False),
])
def test_is_valid_domain(domain, valid):
    assert is_valid_domain(domain) is valid


class TestUpdate:
    """Download → parse → atomic write."""

    def test_write_list(self, temp_dir):
        path = temp_dir / "lists" / "gfwlist.txt"
        assert write_list(path, ["a.com", "b.com"]) == 2
        assert path.read_text() == "a.com\nb.com\n"
        assert not (temp_dir / "lists" / "gfwlist.txt.tmp").exists()

    def test_update_chnroute(self, settings_data, list_dir):
        settings = parse_settings(settings_data)
        session = FakeSession(FakeResponse(APNIC_SAMPLE))
        ipv4, ipv6 = update_chnroute(settings, session=session)
        assert ipv6 == 1
        assert "1.0.8.0/21" in (list_dir / "chnroute.txt").read_text()
        assert (list_dir / "chnroute6.txt").read_text() == "2400:3200::/32\n"

    def test_failed_update_keeps_old_file(self, settings_data, list_dir):
        settings = parse_settings(settings_data)
        before = (list_dir / "gfwlist.txt").read_text()
        session = FakeSession(FakeResponse(status_code=503))
        with pytest.raises(ListUpdateError):
            update_gfwlist(settings, session=session)
        assert (list_dir / "gfwlist.txt").read_text() == before

    def test_empty_list_rejected(self, settings_data, list_dir):
        settings = parse_settings(settings_data)
        encoded = base64.b64encode(b"! nothing here\n").decode()
        with pytest.raises(ListUpdateError, match="no domains"):
            update_gfwlist(settings, session=FakeSession(FakeResponse(encoded)))
