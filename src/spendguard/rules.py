"""Rule tables consumed by the fraud and decision engines.

The tables are data, not code: they load from a JSON file named by
``RULES_PATH`` and fall back to the built-in defaults below. The file may
override any subset of keys:

    {
        "high_risk_mccs": ["7995", "5993"],
        "known_bad_counterparties": ["0xdead..."],
        "fx_rates": {"EUR": "1.08"}
    }
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from spendguard.config import Settings

logger = logging.getLogger(__name__)

# Gambling, betting, quasi-cash
DEFAULT_HIGH_RISK_MCCS = frozenset({"5993", "7995", "7273", "7800", "7801", "7802"})

DEFAULT_MCC_CATEGORIES = {
    "5411": "Grocery Stores",
    "5812": "Restaurants",
    "5814": "Fast Food",
    "5541": "Service Stations",
    "5732": "Electronics",
    "5816": "Digital Goods - Games",
    "5967": "Direct Marketing - Inbound Teleservices",
    "5993": "Cigar Stores",
    "6051": "Quasi-Cash",
    "7273": "Dating Services",
    "7995": "Gambling",
}

DEFAULT_FX_RATES = {
    "USD": Decimal("1"),
    "USDC": Decimal("1"),
    "USDT": Decimal("1"),
    "EUR": Decimal("1.08"),
    "GBP": Decimal("1.27"),
    "CAD": Decimal("0.73"),
}


@dataclass(frozen=True)
class RuleSet:
    """Lookup tables for merchant categories, counterparties and currencies."""

    high_risk_mccs: frozenset[str] = DEFAULT_HIGH_RISK_MCCS
    known_bad_counterparties: frozenset[str] = frozenset()
    mcc_categories: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MCC_CATEGORIES))
    fx_rates: dict[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_FX_RATES))

    def is_high_risk_mcc(self, mcc: Optional[str]) -> bool:
        return bool(mcc) and mcc in self.high_risk_mccs

    def is_known_bad(self, counterparty: Optional[str]) -> bool:
        """Counterparty comparison is case-insensitive (EVM addresses are mixed case)."""
        if not counterparty:
            return False
        return counterparty.lower() in self.known_bad_counterparties

    def to_usd(self, amount: Decimal, currency: str) -> Optional[Decimal]:
        """Convert an amount to USD, or None if the currency is unknown."""
        rate = self.fx_rates.get(currency.upper())
        if rate is None:
            return None
        return amount * rate

    @classmethod
    def from_dict(cls, data: dict) -> "RuleSet":
        """Build a rule set, overlaying ``data`` on the defaults."""
        fx_rates = dict(DEFAULT_FX_RATES)
        for currency, rate in (data.get("fx_rates") or {}).items():
            try:
                fx_rates[currency.upper()] = Decimal(str(rate))
            except InvalidOperation:
                logger.warning(f"Ignoring invalid FX rate for {currency}: {rate!r}")

        mcc_categories = dict(DEFAULT_MCC_CATEGORIES)
        mcc_categories.update(data.get("mcc_categories") or {})

        high_risk = data.get("high_risk_mccs")
        return cls(
            high_risk_mccs=(
                frozenset(str(m) for m in high_risk)
                if high_risk is not None
                else DEFAULT_HIGH_RISK_MCCS
            ),
            known_bad_counterparties=frozenset(
                str(c).lower() for c in data.get("known_bad_counterparties") or []
            ),
            mcc_categories=mcc_categories,
            fx_rates=fx_rates,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "RuleSet":
        """Load a rule set from a JSON file."""
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        rules = cls.from_dict(data)
        logger.info(
            f"Loaded rules from {path}: {len(rules.high_risk_mccs)} high-risk MCCs, "
            f"{len(rules.known_bad_counterparties)} known-bad counterparties"
        )
        return rules


def load_rules(settings: Settings) -> RuleSet:
    """Load the configured rule set, falling back to the defaults."""
    if settings.rules_path:
        return RuleSet.from_file(settings.rules_path)
    return RuleSet()
