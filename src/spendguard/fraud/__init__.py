"""Fraud heuristics."""

from spendguard.fraud.engine import FraudCheckRequest, FraudEngine, RiskVerdict
from spendguard.fraud.geo import GeoCheck, check_geo_anomaly, haversine_km

__all__ = [
    "FraudCheckRequest",
    "FraudEngine",
    "RiskVerdict",
    "GeoCheck",
    "check_geo_anomaly",
    "haversine_km",
]
