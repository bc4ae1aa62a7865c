from __future__ import annotations

import ipaddress
import math
from dataclasses import dataclass
from typing import Dict, Optional, Union

from streamguard.constants import EARTH_RADIUS_KM


@dataclass(frozen=True)
class GeoLocation:
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


UNKNOWN_LOCATION = GeoLocation()


def is_private_ip(ip: Optional[str]) -> bool:
    ip = (ip or "").strip()
    if not ip or ip.lower() == "unknown":
        return False
    try:
        addr = ipaddress.ip_address(ip)
        # RFC1918 + loopback + link-local (IPv4/IPv6)
        return bool(addr.is_private or addr.is_loopback or addr.is_link_local)
    except ValueError:
        return False


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in km."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = math.radians(lat2 - lat1)
    dl = math.radians(lon2 - lon1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


class GeoIPResolver:
    """Maps an IP address to a GeoLocation. Private or unknown IPs map to all-None."""

    def lookup(self, ip: Optional[str]) -> GeoLocation:
        raise NotImplementedError


class NullGeoIPResolver(GeoIPResolver):
    def lookup(self, ip: Optional[str]) -> GeoLocation:
        return UNKNOWN_LOCATION


class StaticGeoIPResolver(GeoIPResolver):
    """
    Table statique IP / CIDR -> GeoLocation.
    Les adresses privées ne sont jamais résolues.
    """

    def __init__(self, entries: Dict[str, Union[GeoLocation, dict]] | None = None):
        self._exact: Dict[str, GeoLocation] = {}
        self._networks = []
        for key, value in (entries or {}).items():
            loc = value if isinstance(value, GeoLocation) else GeoLocation(**value)
            if "/" in key:
                self._networks.append((ipaddress.ip_network(key, strict=False), loc))
            else:
                self._exact[key] = loc

    def lookup(self, ip: Optional[str]) -> GeoLocation:
        ip = (ip or "").strip()
        if not ip or is_private_ip(ip):
            return UNKNOWN_LOCATION
        if ip in self._exact:
            return self._exact[ip]
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return UNKNOWN_LOCATION
        for net, loc in self._networks:
            if addr in net:
                return loc
        return UNKNOWN_LOCATION
