"""Rule-based fraud scoring against an account's history.

Each rule contributes independently to an additive score. Rules are
evaluated in a fixed order so that ``reasons`` is reproducible.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from spendguard.clock import Clock, utcnow
from spendguard.config import Settings
from spendguard.ledger.models import RiskLevel
from spendguard.ledger.repository import LedgerRepository
from spendguard.rules import RuleSet

logger = logging.getLogger(__name__)

SPIKE_SCORE = 30
NEW_RECIPIENT_SCORE = 25
VELOCITY_SCORE = 20
KNOWN_BAD_SCORE = 50
NIGHT_SCORE = 10

CRITICAL_THRESHOLD = 50
HIGH_THRESHOLD = 30
MEDIUM_THRESHOLD = 15


@dataclass
class FraudCheckRequest:
    """A proposed spend to score."""

    account_id: int
    amount_usd: Decimal
    channel: str
    # Instrument the velocity rule counts against ("card" or "wallet")
    scope: str
    scope_id: int
    counterparty: Optional[str] = None
    timezone: str = "UTC"


@dataclass
class RiskVerdict:
    """Risk score in 0..100 with the rules that fired."""

    risk_score: int
    level: RiskLevel
    reasons: list[str] = field(default_factory=list)

    @property
    def is_suspicious(self) -> bool:
        return self.level in (RiskLevel.HIGH, RiskLevel.CRITICAL)


def level_for_score(score: int) -> RiskLevel:
    """Map a score to its risk level."""
    if score >= CRITICAL_THRESHOLD:
        return RiskLevel.CRITICAL
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return ZoneInfo("UTC")


def local_hour(moment: datetime, zone: ZoneInfo) -> int:
    """Hour of a naive-UTC timestamp in ``zone``."""
    return moment.replace(tzinfo=timezone.utc).astimezone(zone).hour


class FraudEngine:
    """Scores proposed spends.

    Example:
        engine = FraudEngine(settings, rules)
        verdict = await engine.evaluate(repo, FraudCheckRequest(...))
        if verdict.is_suspicious:
            ...
    """

    def __init__(self, settings: Settings, rules: RuleSet, clock: Clock = utcnow):
        self.settings = settings
        self.rules = rules
        self.clock = clock

    def is_night(self, hour: int) -> bool:
        return not (self.settings.fraud_day_start_hour <= hour < self.settings.fraud_day_end_hour)

    async def evaluate(self, repo: LedgerRepository, request: FraudCheckRequest) -> RiskVerdict:
        """Score a proposed spend. Store errors propagate to the caller."""
        now = self.clock()
        score = 0
        reasons: list[str] = []

        since = now - timedelta(days=self.settings.fraud_average_window_days)
        average = await repo.get_average_amount(request.account_id, since)
        amount = request.amount_usd

        # 1. Amount spike against the trailing average
        if average > 0 and amount >= average * self.settings.fraud_spike_multiplier:
            score += SPIKE_SCORE
            reasons.append("LARGE_SPIKE")

        # 2. Large amount to an unfamiliar counterparty
        if request.counterparty and average > 0:
            prior = await repo.count_counterparty(request.account_id, request.counterparty)
            if (
                prior < self.settings.fraud_common_recipient_min_count
                and amount >= average * self.settings.fraud_new_recipient_multiplier
            ):
                score += NEW_RECIPIENT_SCORE
                reasons.append("NEW_RECIPIENT")

        # 3. Velocity on the instrument
        window_start = now - timedelta(minutes=self.settings.velocity_window_minutes)
        recent = await repo.count_spend_since(request.scope, request.scope_id, window_start)
        if recent > self.settings.fraud_velocity_threshold:
            score += VELOCITY_SCORE
            reasons.append("VELOCITY")

        # 4. Known-bad counterparty
        if self.rules.is_known_bad(request.counterparty):
            score += KNOWN_BAD_SCORE
            reasons.append("KNOWN_BAD_COUNTERPARTY")

        # 5. Night-time spend on an account that normally spends by day
        zone = _zone(request.timezone)
        if self.is_night(local_hour(now, zone)):
            if not await self._is_night_skewed(repo, request.account_id, since, zone):
                score += NIGHT_SCORE
                reasons.append("UNUSUAL_HOUR")

        score = min(score, 100)
        verdict = RiskVerdict(risk_score=score, level=level_for_score(score), reasons=reasons)

        if verdict.is_suspicious:
            logger.warning(
                f"Suspicious {request.channel} spend for account {request.account_id}: "
                f"score={score} reasons={reasons}"
            )
        else:
            logger.debug(f"Fraud score for account {request.account_id}: {score} {reasons}")
        return verdict

    async def _is_night_skewed(
        self, repo: LedgerRepository, account_id: int, since: datetime, zone: ZoneInfo
    ) -> bool:
        timestamps = await repo.get_recent_timestamps(
            account_id, since, limit=self.settings.fraud_history_sample_size
        )
        if not timestamps:
            return False
        night = sum(1 for ts in timestamps if self.is_night(local_hour(ts, zone)))
        return night / len(timestamps) >= self.settings.fraud_night_skew_ratio
