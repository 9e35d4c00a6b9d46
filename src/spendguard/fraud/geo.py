"""Geo-mismatch detection between consecutive card spends."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclass
class GeoCheck:
    """Result of comparing a spend location with the previous one."""

    is_anomaly: bool
    distance_km: Optional[float] = None
    minutes_since_last: Optional[float] = None


def check_geo_anomaly(
    latitude: Optional[float],
    longitude: Optional[float],
    last_latitude: Optional[float],
    last_longitude: Optional[float],
    last_seen_at: Optional[datetime],
    now: datetime,
    max_distance_km: float = 500.0,
    window_minutes: int = 60,
) -> GeoCheck:
    """Flag a spend far from a recent previous location.

    Anomalous when the previous location was recorded within ``window_minutes``
    and the distance exceeds ``max_distance_km``. Never blocks on its own.
    """
    if None in (latitude, longitude, last_latitude, last_longitude, last_seen_at):
        return GeoCheck(is_anomaly=False)

    elapsed = now - last_seen_at
    minutes = elapsed.total_seconds() / 60
    distance = haversine_km(last_latitude, last_longitude, latitude, longitude)

    if elapsed > timedelta(minutes=window_minutes) or elapsed < timedelta(0):
        return GeoCheck(is_anomaly=False, distance_km=distance, minutes_since_last=minutes)

    return GeoCheck(
        is_anomaly=distance > max_distance_km,
        distance_km=distance,
        minutes_since_last=minutes,
    )
