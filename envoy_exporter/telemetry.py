"""Envoy telemetry parser module.

This module handles:
- Parsing the meter production report into overall production watts
- Parsing the per-inverter production list
- Parsing the lifetime energy total from production.json

Payload formats (simplified to the fields used here):
- /ivp/meters/reports/production: {"cumulative": {"currW": 5560.898, ...}, ...}
- /api/v1/production/inverters: [{"serialNumber": "202239009733", "lastReportWatts": 267, ...}, ...]
- /production.json: {"production": [{"type": "inverters", "whLifetime": 1234567, ...}, ...]}
"""

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(frozen=True)
class ProductionReading:
    """Point-in-time production telemetry.

    Attributes:
        production_watts: Overall production in watts (may be zero or slightly negative)
        inverters: Last reported watts per inverter serial number
        lifetime_watt_hours: Energy produced by the inverters over their lifetime
        has_data: False until the first successful production poll
    """
    production_watts: float = 0.0
    inverters: Dict[str, float] = field(default_factory=dict)
    lifetime_watt_hours: float = 0.0
    has_data: bool = False


class TelemetryParseError(Exception):
    """Exception raised when a telemetry payload cannot be parsed."""
    pass


def _as_number(value: Any, what: str) -> float:
    """Convert a JSON number to float, rejecting booleans and strings."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TelemetryParseError(f"{what} is not a number: {value!r}")
    return float(value)


def parse_production(payload: Any) -> float:
    """Extract overall production watts from the meter production report.

    Args:
        payload: Decoded JSON from /ivp/meters/reports/production

    Returns:
        Current production in watts

    Raises:
        TelemetryParseError: If the payload has no cumulative.currW number

    Example:
        >>> parse_production({"cumulative": {"currW": 5560.898}})
        5560.898
    """
    if not isinstance(payload, dict):
        raise TelemetryParseError(f"Expected an object, got {type(payload).__name__}")

    cumulative = payload.get("cumulative")
    if not isinstance(cumulative, dict) or "currW" not in cumulative:
        raise TelemetryParseError("Production report has no cumulative.currW")

    return _as_number(cumulative["currW"], "cumulative.currW")


def parse_inverters(payload: Any) -> Dict[str, float]:
    """Extract last reported watts per inverter.

    The Envoy only refreshes these values every few minutes, so they may be
    older than the overall production figure.

    Args:
        payload: Decoded JSON from /api/v1/production/inverters

    Returns:
        Mapping of inverter serial number to last reported watts

    Raises:
        TelemetryParseError: If the payload is not a list of inverter entries
    """
    if not isinstance(payload, list):
        raise TelemetryParseError(f"Expected a list of inverters, got {type(payload).__name__}")

    readings = {}
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise TelemetryParseError(f"Inverter entry {index} is not an object")

        serial = entry.get("serialNumber")
        if not isinstance(serial, str) or not serial:
            raise TelemetryParseError(f"Inverter entry {index} has no serialNumber")

        if "lastReportWatts" not in entry:
            raise TelemetryParseError(f"Inverter {serial} has no lastReportWatts")

        readings[serial] = _as_number(entry["lastReportWatts"], f"Inverter {serial} lastReportWatts")

    return readings


def parse_lifetime_watt_hours(payload: Any) -> float:
    """Extract lifetime watt hours of the inverters from production.json.

    Args:
        payload: Decoded JSON from /production.json

    Returns:
        Lifetime watt hours, or 0.0 if the payload has no "inverters" entry

    Raises:
        TelemetryParseError: If the payload has no production list
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("production"), list):
        raise TelemetryParseError("production.json has no production list")

    for item in payload["production"]:
        if isinstance(item, dict) and item.get("type") == "inverters":
            return _as_number(item.get("whLifetime"), "inverters whLifetime")

    return 0.0
