"""Spend limit aggregation."""

from spendguard.limits.aggregator import DailyLimitCheck, DailySummary, LimitAggregator

__all__ = ["DailyLimitCheck", "DailySummary", "LimitAggregator"]
