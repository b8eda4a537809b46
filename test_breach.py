"""Breach oracle: k-anonymity lookup, HTTP source and failure handling."""

import hashlib

import httpx
import pytest

from secretplan.breach import (
    BreachOracleClient,
    PwnedPasswordsSource,
    parse_range_response,
)
from secretplan.errors import BreachCheckError
from secretplan.models import BreachState

from conftest import FakeRangeSource

PASSWORD_SHA1 = hashlib.sha1(b"password").hexdigest().upper()   # 5BAA6...


def test_hash_password_is_uppercase_sha1():
    assert BreachOracleClient.hash_password("password") == PASSWORD_SHA1
    assert PASSWORD_SHA1.startswith("5BAA6")


def test_only_prefix_is_sent():
    source = FakeRangeSource()
    BreachOracleClient(source).check("password")
    assert source.prefixes == ["5BAA6"]


def test_listed_password_is_compromised():
    source = FakeRangeSource({PASSWORD_SHA1: 3861493})
    assert BreachOracleClient(source).check("password") is BreachState.COMPROMISED


def test_unlisted_password_is_safe():
    # Same prefix, different suffix
    other = PASSWORD_SHA1[:5] + "0" * 35
    source = FakeRangeSource({other: 12})
    assert BreachOracleClient(source).check("password") is BreachState.SAFE


def test_padding_entries_do_not_match():
    source = FakeRangeSource({PASSWORD_SHA1: 0})
    assert BreachOracleClient(source).check("password") is BreachState.SAFE


def test_lowercase_suffixes_match():
    class LowerSource(FakeRangeSource):
        def fetch_range(self, prefix):
            return [(PASSWORD_SHA1[5:].lower(), 2)]

    assert BreachOracleClient(LowerSource()).check("password") is BreachState.COMPROMISED


def test_source_failure_raises():
    source = FakeRangeSource(error=BreachCheckError("down"))
    with pytest.raises(BreachCheckError):
        BreachOracleClient(source).check("password")


def test_unexpected_source_error_is_wrapped():
    source = FakeRangeSource(error=ConnectionResetError("reset"))
    with pytest.raises(BreachCheckError):
        BreachOracleClient(source).check("password")


def test_parse_range_response():
    body = "0018A45C4D1DEF81644B54AB7F969B88D65:1\r\n00D4F6E8FA6EECAD2A3AA415EEC418D38EC:0\n\nabc\n"
    assert parse_range_response(body) == [
        ("0018A45C4D1DEF81644B54AB7F969B88D65", 1),
        ("00D4F6E8FA6EECAD2A3AA415EEC418D38EC", 0),
        ("ABC", 1),
    ]


def test_parse_range_response_rejects_garbage():
    with pytest.raises(BreachCheckError):
        parse_range_response("ABC:lots")


def _source(handler):
    return PwnedPasswordsSource(transport=httpx.MockTransport(handler))


def test_http_source_requests_range():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        return httpx.Response(200, text=f"{PASSWORD_SHA1[5:]}:42\r\n")

    with _source(handler) as source:
        assert BreachOracleClient(source).check("password") is BreachState.COMPROMISED

    assert seen["path"] == "/range/5BAA6"
    assert seen["headers"]["Add-Padding"] == "true"
    assert seen["headers"]["User-Agent"].startswith("SecretPlan/")


def test_http_error_status_raises():
    with _source(lambda request: httpx.Response(503)) as source:
        with pytest.raises(BreachCheckError):
            BreachOracleClient(source).check("password")


def test_http_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    with _source(handler) as source:
        with pytest.raises(BreachCheckError):
            source.fetch_range("5BAA6")


def test_http_timeout_raises():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with _source(handler) as source:
        with pytest.raises(BreachCheckError):
            BreachOracleClient(source).check("password")


def test_invalid_prefix_rejected():
    with _source(lambda request: httpx.Response(200)) as source:
        with pytest.raises(ValueError):
            source.fetch_range("XYZ12")
        with pytest.raises(ValueError):
            source.fetch_range("5BAA")
