"""Tests for the Prometheus exporter."""

from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry, generate_latest

from envoy_exporter.exporter import EnvoyExporter, parse_listen_address
from envoy_exporter.state import MetricsStateStore, PollStatus
from envoy_exporter.telemetry import ProductionReading


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def store():
    return MetricsStateStore()


def test_metrics_before_first_poll(store, registry):
    EnvoyExporter(store, registry=registry)

    assert registry.get_sample_value("enphase_envoy_production_watts") == 0.0
    assert registry.get_sample_value("enphase_envoy_lifetime_watt_hours_total") == 0.0
    assert registry.get_sample_value(
        "enphase_envoy_inverter_production_watts", {"serial_num": "202239009733"}
    ) is None


def test_metrics_reflect_latest_snapshot(store, registry):
    EnvoyExporter(store, registry=registry)
    store.publish(ProductionReading(
        production_watts=5560.898,
        inverters={"202239009733": 267.0, "202238191756": 265.0},
        lifetime_watt_hours=9_876_543.0,
        has_data=True,
    ))

    assert registry.get_sample_value("enphase_envoy_production_watts") == 5560.898
    assert registry.get_sample_value(
        "enphase_envoy_inverter_production_watts", {"serial_num": "202239009733"}
    ) == 267.0
    assert registry.get_sample_value(
        "enphase_envoy_inverter_production_watts", {"serial_num": "202238191756"}
    ) == 265.0
    assert registry.get_sample_value("enphase_envoy_lifetime_watt_hours_total") == 9_876_543.0

    store.publish_production(100.0)

    assert registry.get_sample_value("enphase_envoy_production_watts") == 100.0


def test_exposition_format(store, registry):
    EnvoyExporter(store, registry=registry)
    store.publish_production(5560.898)
    store.publish_inverters({"202239009733": 267.0})

    output = generate_latest(registry).decode("utf-8")

    assert "# TYPE enphase_envoy_production_watts gauge" in output
    assert "enphase_envoy_production_watts 5560.898" in output
    assert "# TYPE enphase_envoy_inverter_production_watts gauge" in output
    assert 'enphase_envoy_inverter_production_watts{serial_num="202239009733"} 267.0' in output
    # Counter TYPE line naming differs between client versions
    assert "enphase_envoy_lifetime_watt_hours_total 0.0" in output


def test_poll_status_metrics(store, registry):
    EnvoyExporter(store, registry=registry)
    store.record_poll("production", PollStatus(success=True, timestamp=1_700_000_000.0, duration=0.25))
    store.record_poll("inverters", PollStatus(success=False, timestamp=1_700_000_001.0, duration=10.0,
                                              error="timed out"))

    assert registry.get_sample_value("enphase_envoy_poll_success", {"poll": "production"}) == 1.0
    assert registry.get_sample_value("enphase_envoy_poll_success", {"poll": "inverters"}) == 0.0
    assert registry.get_sample_value(
        "enphase_envoy_poll_timestamp_seconds", {"poll": "production"}
    ) == 1_700_000_000.0
    assert registry.get_sample_value("enphase_envoy_poll_duration_seconds", {"poll": "inverters"}) == 10.0


@pytest.mark.parametrize("address, expected", [
    ("[::1]:12345", ("::1", 12345)),
    ("0.0.0.0:9120", ("0.0.0.0", 9120)),
    ("localhost:8000", ("localhost", 8000)),
    (":9120", ("0.0.0.0", 9120)),
])
def test_parse_listen_address(address, expected):
    assert parse_listen_address(address) == expected


@pytest.mark.parametrize("address", ["12345", "[::1]:", "host:http", "host:0", "host:70000"])
def test_parse_listen_address_rejects_invalid(address):
    with pytest.raises(ValueError):
        parse_listen_address(address)


@patch("envoy_exporter.exporter.start_http_server")
def test_start_binds_listen_address(mock_start, store, registry):
    exporter = EnvoyExporter(store, listen_address="[::1]:12345", registry=registry)

    exporter.start()
    exporter.start()

    mock_start.assert_called_once_with(12345, addr="::1", registry=registry)
