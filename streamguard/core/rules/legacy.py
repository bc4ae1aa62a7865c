"""Conversion des anciennes règles typées vers des arbres de conditions."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from streamguard.errors import RuleConfigError

RULE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "impossible_travel": {"maxSpeedKmh": 500},
    "simultaneous_locations": {"minDistanceKm": 100},
    "device_velocity": {"maxIps": 5, "windowHours": 24},
    "concurrent_streams": {"maxStreams": 3},
    "geo_restriction": {"blockedCountries": []},
    "account_inactivity": {"inactivityDays": 30},
}

DEFAULT_SEVERITIES = {
    "impossible_travel": "high",
    "simultaneous_locations": "warning",
    "device_velocity": "warning",
    "concurrent_streams": "low",
    "geo_restriction": "high",
    "account_inactivity": "low",
}

LEGACY_TYPES = tuple(RULE_DEFAULTS)


def _condition(rule_type: str, p: Dict[str, Any]) -> Dict[str, Any]:
    if rule_type == "impossible_travel":
        return {"field": "travel_speed_kmh", "operator": "gt", "value": p["maxSpeedKmh"]}
    if rule_type == "simultaneous_locations":
        return {"field": "location_distance_km", "operator": "gt", "value": p["minDistanceKm"]}
    if rule_type == "device_velocity":
        return {
            "field": "unique_ips_in_window",
            "operator": "gt",
            "value": p["maxIps"],
            "params": {"window_hours": p["windowHours"]},
        }
    if rule_type == "concurrent_streams":
        return {"field": "concurrent_streams", "operator": "gt", "value": p["maxStreams"]}
    if rule_type == "geo_restriction":
        return {"field": "country", "operator": "in", "value": list(p["blockedCountries"] or [])}
    # account_inactivity
    return {"field": "inactive_days", "operator": "gt", "value": p["inactivityDays"]}


def convert_legacy_rule(
    rule_type: str,
    params: Optional[Dict[str, Any]] = None,
    severity: Optional[str] = None,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """
    Returns (conditions, actions) for a legacy rule type. Missing params fall
    back to RULE_DEFAULTS.
    """
    if rule_type not in RULE_DEFAULTS:
        raise RuleConfigError(f"Unknown legacy rule type: {rule_type}")

    p = dict(RULE_DEFAULTS[rule_type])
    p.update({k: v for k, v in (params or {}).items() if v is not None})

    conditions = {"groups": [{"conditions": [_condition(rule_type, p)]}]}
    actions = [{"type": "create_violation", "severity": severity or DEFAULT_SEVERITIES[rule_type]}]
    return conditions, actions
