"""Tests for geo-mismatch detection."""

from datetime import datetime, timedelta

import pytest

from spendguard.fraud.geo import check_geo_anomaly, haversine_km

SAN_FRANCISCO = (37.7749, -122.4194)
LOS_ANGELES = (34.0522, -118.2437)
OAKLAND = (37.8044, -122.2712)

NOW = datetime(2026, 3, 10, 12, 0, 0)


class TestHaversine:
    def test_san_francisco_to_los_angeles(self):
        assert haversine_km(*SAN_FRANCISCO, *LOS_ANGELES) == pytest.approx(559, abs=2)

    def test_same_point(self):
        assert haversine_km(*SAN_FRANCISCO, *SAN_FRANCISCO) == 0


class TestGeoAnomaly:
    def test_far_within_window(self):
        check = check_geo_anomaly(
            *LOS_ANGELES, *SAN_FRANCISCO, NOW - timedelta(minutes=30), NOW
        )

        assert check.is_anomaly is True
        assert check.distance_km > 500
        assert check.minutes_since_last == pytest.approx(30)

    def test_far_outside_window(self):
        check = check_geo_anomaly(
            *LOS_ANGELES, *SAN_FRANCISCO, NOW - timedelta(minutes=61), NOW
        )

        assert check.is_anomaly is False

    def test_near_within_window(self):
        check = check_geo_anomaly(*OAKLAND, *SAN_FRANCISCO, NOW - timedelta(minutes=5), NOW)

        assert check.is_anomaly is False
        assert check.distance_km < 50

    def test_missing_coordinates(self):
        assert not check_geo_anomaly(None, None, *SAN_FRANCISCO, NOW, NOW).is_anomaly
        assert not check_geo_anomaly(*LOS_ANGELES, None, None, None, NOW).is_anomaly

    def test_custom_threshold(self):
        check = check_geo_anomaly(
            *LOS_ANGELES,
            *SAN_FRANCISCO,
            NOW - timedelta(minutes=30),
            NOW,
            max_distance_km=600,
        )

        assert check.is_anomaly is False
