"""Tests for the Envoy telemetry parsers."""

import pytest

from envoy_exporter.telemetry import (
    ProductionReading,
    TelemetryParseError,
    parse_inverters,
    parse_lifetime_watt_hours,
    parse_production,
)

PRODUCTION_REPORT = {
    "createdAt": 1_700_000_000,
    "reportType": "production",
    "cumulative": {
        "currW": 5560.898,
        "actPower": 5560.898,
        "apprntPwr": 5620.1,
        "whDlvdCum": 2_345_678.0,
    },
    "lines": [],
}

INVERTERS = [
    {
        "serialNumber": "202239009733",
        "lastReportDate": 1_700_000_000,
        "devType": 1,
        "lastReportWatts": 267,
        "maxReportWatts": 295,
    },
    {
        "serialNumber": "202238191756",
        "lastReportDate": 1_700_000_012,
        "devType": 1,
        "lastReportWatts": 265,
        "maxReportWatts": 294,
    },
]


def test_empty_reading_has_no_data():
    reading = ProductionReading()

    assert reading.production_watts == 0.0
    assert reading.inverters == {}
    assert reading.lifetime_watt_hours == 0.0
    assert reading.has_data is False


def test_parse_production():
    assert parse_production(PRODUCTION_REPORT) == 5560.898


@pytest.mark.parametrize("watts", [0, -1.25])
def test_parse_production_accepts_zero_and_negative(watts):
    assert parse_production({"cumulative": {"currW": watts}}) == float(watts)


@pytest.mark.parametrize("payload", [
    [],
    {},
    {"cumulative": []},
    {"cumulative": {"actPower": 1.0}},
    {"cumulative": {"currW": "5560.898"}},
    {"cumulative": {"currW": None}},
    {"cumulative": {"currW": True}},
])
def test_parse_production_rejects_malformed(payload):
    with pytest.raises(TelemetryParseError):
        parse_production(payload)


def test_parse_inverters():
    assert parse_inverters(INVERTERS) == {
        "202239009733": 267.0,
        "202238191756": 265.0,
    }


def test_parse_inverters_empty_list():
    assert parse_inverters([]) == {}


@pytest.mark.parametrize("payload", [
    {"inverters": []},
    ["202239009733"],
    [{"lastReportWatts": 267}],
    [{"serialNumber": "", "lastReportWatts": 267}],
    [{"serialNumber": "202239009733"}],
    [{"serialNumber": "202239009733", "lastReportWatts": "267"}],
])
def test_parse_inverters_rejects_malformed(payload):
    with pytest.raises(TelemetryParseError):
        parse_inverters(payload)


def test_parse_lifetime_watt_hours():
    payload = {
        "production": [
            {"type": "inverters", "activeCount": 2, "wNow": 532, "whLifetime": 9_876_543},
            {"type": "eim", "measurementType": "production", "whLifetime": 9_000_000.5},
        ],
        "consumption": [],
    }

    assert parse_lifetime_watt_hours(payload) == 9_876_543.0


def test_parse_lifetime_without_inverters_entry():
    assert parse_lifetime_watt_hours({"production": [{"type": "eim", "whLifetime": 5.0}]}) == 0.0


@pytest.mark.parametrize("payload", [
    {},
    {"production": {}},
    {"production": [{"type": "inverters"}]},
    [],
])
def test_parse_lifetime_rejects_malformed(payload):
    with pytest.raises(TelemetryParseError):
        parse_lifetime_watt_hours(payload)
