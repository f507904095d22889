from __future__ import annotations

import logging

import pytest
import requests

from conftest import FakeResponse, FakeSession, amap_payload
from geostamp import AddressComponent, GeoResolver, StructuredLogger


def test_resolve_builds_request_and_joins_address(logger: StructuredLogger) -> None:
    session = FakeSession(FakeResponse(amap_payload(city="上海城区")))
    resolver = GeoResolver("secret", logger, session=session)

    address = resolver.resolve(31.23, 121.47)

    assert address == "上海市上海城区黄浦区"
    assert len(session.calls) == 1
    call = session.calls[0]
    assert call["url"] == "https://restapi.amap.com/v3/geocode/regeo"
    assert call["params"] == {
        "output": "JSON",
        "location": "121.470000,31.230000",
        "key": "secret",
        "radius": 10,
    }
    assert call["timeout"] is None


def test_timeout_is_passed_through(logger: StructuredLogger) -> None:
    session = FakeSession(FakeResponse(amap_payload()))

    GeoResolver("secret", logger, session=session).resolve(1.0, 2.0, timeout=3.5)

    assert session.calls[0]["timeout"] == 3.5


@pytest.mark.parametrize(
    "city, expected",
    [
        ("", "上海市黄浦区"),
        ([], "上海市黄浦区"),
        (["苏州市", "其他"], "上海市苏州市黄浦区"),
        (None, "上海市黄浦区"),
        ([3], "上海市黄浦区"),
    ],
)
def test_city_field_shapes(logger: StructuredLogger, city, expected: str) -> None:
    session = FakeSession(FakeResponse(amap_payload(city=city)))

    assert GeoResolver("secret", logger, session=session).resolve(31.23, 121.47) == expected


def test_city_missing_entirely() -> None:
    component = AddressComponent.from_response(
        {"status": "1", "regeocode": {"addressComponent": {"province": "北京市", "district": "东城区"}}}
    )

    assert component == AddressComponent(province="北京市", city="", district="东城区")
    assert component.format() == "北京市东城区"


def test_empty_array_province_is_normalized() -> None:
    component = AddressComponent.from_response(
        {"regeocode": {"addressComponent": {"province": [], "city": [], "district": []}}}
    )

    assert component.format() == ""


def test_no_api_key_skips_network(logger: StructuredLogger, caplog: pytest.LogCaptureFixture) -> None:
    session = FakeSession(FakeResponse(amap_payload()))

    with caplog.at_level(logging.WARNING):
        assert GeoResolver("", logger, session=session).resolve(31.23, 121.47) == ""

    assert session.calls == []
    assert "API key is empty" in caplog.text


def test_missing_coordinates_skip_network(logger: StructuredLogger) -> None:
    session = FakeSession(FakeResponse(amap_payload()))

    assert GeoResolver("secret", logger, session=session).resolve(None, None) == ""
    assert session.calls == []


@pytest.mark.parametrize(
    "session",
    [
        FakeSession(error=requests.ConnectionError("connection refused")),
        FakeSession(error=requests.Timeout("read timed out")),
        FakeSession(FakeResponse(amap_payload(), status_code=500)),
        FakeSession(FakeResponse(None, text="<html>bad gateway</html>")),
        FakeSession(FakeResponse(amap_payload(status="0"))),
        FakeSession(FakeResponse(["not", "an", "object"])),
    ],
    ids=["network", "timeout", "http-500", "not-json", "status-0", "wrong-shape"],
)
def test_failures_degrade_to_empty_address(
    logger: StructuredLogger, caplog: pytest.LogCaptureFixture, session: FakeSession
) -> None:
    with caplog.at_level(logging.WARNING):
        address = GeoResolver("secret", logger, session=session).resolve(31.23, 121.47)

    assert address == ""
    assert caplog.records, "failure should be logged"
