"""Tests for the allow-list fetcher."""

from __future__ import annotations

import httpx
import pytest

from guardsync.errors import FetchError, FetchErrorKind
from guardsync.fetch import AllowListFetcher

URL = "https://example.test/meta/ips"


def test_fetch_prefixes(make_fetcher):
    document = {
        "prefixes": [
            {"ip_prefix": "69.162.124.0/24", "region": "us"},
            {"ip_prefix": "2607:ff68:107::/48"},
            {"ip_prefix": "216.144.250.150"},
        ]
    }
    entries = make_fetcher(document).fetch(URL)

    assert [e.network_prefix for e in entries] == [
        "69.162.124.0/24",
        "2607:ff68:107::/48",
        "216.144.250.150/32",
    ]
    assert all(e.ports == frozenset({80, 443}) for e in entries)
    assert all(e.label == "guardsync" for e in entries)


def test_bare_list_and_custom_field(make_fetcher):
    document = [{"cidr": "10.0.0.0/8"}, {"cidr": "10.0.0.0/8"}, {"other": "x"}]
    entries = make_fetcher(document, prefix_field="cidr", ports=(8443,)).fetch(URL)
    assert len(entries) == 1
    assert entries[0].ports == frozenset({8443})


def test_malformed_entries_are_skipped(make_fetcher):
    document = {"prefixes": [{"ip_prefix": "bogus"}, {"ip_prefix": "1.2.3.0/24"}]}
    entries = make_fetcher(document).fetch(URL)
    assert [e.network_prefix for e in entries] == ["1.2.3.0/24"]


def test_empty_list_is_an_error(make_fetcher):
    with pytest.raises(FetchError) as exc:
        make_fetcher({"prefixes": []}).fetch(URL)
    assert exc.value.kind is FetchErrorKind.EMPTY
    assert not exc.value.retryable


def test_missing_list_key_is_empty(make_fetcher):
    with pytest.raises(FetchError) as exc:
        make_fetcher({"something_else": []}).fetch(URL)
    assert exc.value.kind is FetchErrorKind.EMPTY


def test_all_malformed_is_parse_error(make_fetcher):
    with pytest.raises(FetchError) as exc:
        make_fetcher({"prefixes": [{"ip_prefix": "nope"}]}).fetch(URL)
    assert exc.value.kind is FetchErrorKind.PARSE


def test_wrong_shape_is_parse_error(make_fetcher):
    with pytest.raises(FetchError) as exc:
        make_fetcher({"prefixes": "1.2.3.0/24"}).fetch(URL)
    assert exc.value.kind is FetchErrorKind.PARSE


def test_http_error_status(make_fetcher):
    with pytest.raises(FetchError) as exc:
        make_fetcher({"error": "down"}, status_code=503).fetch(URL)
    assert exc.value.kind is FetchErrorKind.NETWORK
    assert exc.value.retryable
    assert "503" in str(exc.value)


def test_invalid_json():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(FetchError) as exc:
        AllowListFetcher(transport=transport).fetch(URL)
    assert exc.value.kind is FetchErrorKind.PARSE


def test_connection_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FetchError) as exc:
        AllowListFetcher(transport=httpx.MockTransport(handler)).fetch(URL)
    assert exc.value.kind is FetchErrorKind.NETWORK


def test_sends_user_agent():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"prefixes": [{"ip_prefix": "1.2.3.0/24"}]})

    AllowListFetcher(transport=httpx.MockTransport(handler)).fetch(URL)
    assert seen[0].headers["User-Agent"].startswith("guardsync/")


def test_empty_port_set_is_rejected():
    with pytest.raises(ValueError, match="port"):
        AllowListFetcher(ports=())
