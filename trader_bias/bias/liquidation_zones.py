# trader_bias/bias/liquidation_zones.py
"""Estimated liquidation cascade zones around the current mark price.

Leverage is inferred from how crowded funding is, then bumped when open
interest is growing fast. Zones sit at price * (1 -/+ 1 / leverage).
"""

from dataclasses import dataclass
from typing import Any

# (annualised funding % above which, assumed leverage)
LEVERAGE_TIERS = [(73.0, 100), (36.0, 85)]
BASE_LEVERAGE = 75
# (24h OI change % above which, extra leverage)
OI_VELOCITY_BUMPS = [(20.0, 10), (10.0, 5)]
MIN_LEVERAGE = 50
MAX_LEVERAGE = 125

MAX_ZONE_DISTANCE_PCT = 2.0
OI_AT_RISK_SHARE = 0.3

HIGH = "HIGH"
MEDIUM = "MEDIUM"
LOW = "LOW"
# (min OI at risk in USD, max distance %)
PROBABILITY_TIERS = [(HIGH, 500_000_000, 1.0), (MEDIUM, 100_000_000, 1.5)]
_RANK = {HIGH: 3, MEDIUM: 2, LOW: 1}


def annualise_funding(rate: float) -> float:
    """Per-8h funding rate to annualised percent."""
    return abs(rate) * 3 * 365 * 100


def estimate_leverage(funding_rate: float, oi_velocity_pct: float) -> int:
    annualised = annualise_funding(funding_rate)
    leverage = BASE_LEVERAGE
    for threshold, tier in LEVERAGE_TIERS:
        if annualised > threshold:
            leverage = tier
            break
    for threshold, bump in OI_VELOCITY_BUMPS:
        if oi_velocity_pct > threshold:
            leverage += bump
            break
    return max(MIN_LEVERAGE, min(MAX_LEVERAGE, leverage))


def determine_probability(oi_at_risk: float, distance_pct: float) -> str:
    for label, oi_min, distance_max in PROBABILITY_TIERS:
        if oi_at_risk >= oi_min and distance_pct <= distance_max:
            return label
    return LOW


@dataclass(frozen=True)
class Zone:
    price: float
    distance_pct: float
    oi_at_risk: float
    probability: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": round(self.price, 2),
            "distance": round(self.distance_pct, 2),
            "oiAtRisk": self.oi_at_risk,
            "probability": self.probability,
        }


@dataclass(frozen=True)
class LiquidationZones:
    coin: str
    current_price: float
    long: Zone
    short: Zone
    avg_funding: float
    aggregated_oi: float
    oi_velocity_pct: float
    leverage: int

    @property
    def probability(self) -> str:
        return max(self.long.probability, self.short.probability, key=_RANK.__getitem__)

    def to_dict(self) -> dict[str, Any]:
        return {
            "coin": self.coin,
            "currentPrice": self.current_price,
            "zones": {"long": self.long.to_dict(), "short": self.short.to_dict()},
            "inputs": {
                "avgFunding": self.avg_funding,
                "avgFundingAnnualized": annualise_funding(self.avg_funding),
                "aggregatedOI": self.aggregated_oi,
                "oiVelocity": round(self.oi_velocity_pct, 1),
                "estimatedLeverage": self.leverage,
            },
            "probability": self.probability,
        }


def calculate_liquidation_zones(
    coin: str,
    price: float | None,
    avg_funding: float,
    aggregated_oi: float,
    oi_velocity_pct: float,
) -> LiquidationZones | None:
    if not price or price <= 0:
        return None

    leverage = estimate_leverage(avg_funding, oi_velocity_pct)
    distance = min(100 / leverage, MAX_ZONE_DISTANCE_PCT)
    oi_at_risk = aggregated_oi * OI_AT_RISK_SHARE
    probability = determine_probability(oi_at_risk, distance)

    return LiquidationZones(
        coin=coin,
        current_price=price,
        long=Zone(price * (1 - distance / 100), distance, oi_at_risk, probability),
        short=Zone(price * (1 + distance / 100), distance, oi_at_risk, probability),
        avg_funding=avg_funding,
        aggregated_oi=aggregated_oi,
        oi_velocity_pct=oi_velocity_pct,
        leverage=leverage,
    )
