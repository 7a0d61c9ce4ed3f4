# trader_bias/aggregator/flow.py
from dataclasses import dataclass, field

from trader_bias.storage.models import PERP, SPOT
from trader_bias.storage.rings import BUY_VOLUME, SELL_VOLUME, RingStore

FLOW_TIMEFRAMES = {
    "15m": 15 * 60 * 1000,
    "1h": 60 * 60 * 1000,
}


@dataclass
class FlowResult:
    buy: float = 0.0
    sell: float = 0.0

    @property
    def net(self) -> float:
        return self.buy - self.sell

    def to_dict(self) -> dict[str, float]:
        return {"buyVol": self.buy, "sellVol": self.sell, "net": self.net}


@dataclass
class ExchangeFlow:
    coin: str
    timeframe: str
    # exchange -> venue -> flow, None when the exchange has no such venue
    by_exchange: dict[str, dict[str, FlowResult | None]] = field(default_factory=dict)

    @property
    def total(self) -> FlowResult:
        result = FlowResult()
        for venues in self.by_exchange.values():
            for flow in venues.values():
                if flow is not None:
                    result.buy += flow.buy
                    result.sell += flow.sell
        return result

    def to_dict(self) -> dict:
        return {
            "coin": self.coin,
            "timeframe": self.timeframe,
            "total": self.total.to_dict(),
            "exchanges": {
                exchange: {v: (f.to_dict() if f else None) for v, f in venues.items()}
                for exchange, venues in self.by_exchange.items()
            },
        }


def calculate_flow(
    rings: RingStore, exchange: str, venue: str, coin: str, window_ms: int, now_ms: int
) -> FlowResult:
    buy_ring = rings.get(exchange, venue, coin, BUY_VOLUME)
    sell_ring = rings.get(exchange, venue, coin, SELL_VOLUME)
    return FlowResult(
        buy=buy_ring.sum_over_last(window_ms, now_ms) if buy_ring else 0.0,
        sell=sell_ring.sum_over_last(window_ms, now_ms) if sell_ring else 0.0,
    )


def calculate_exchange_flow(
    rings: RingStore,
    venues_by_exchange: dict[str, set[str]],
    coin: str,
    timeframe: str,
    now_ms: int,
) -> ExchangeFlow:
    window_ms = FLOW_TIMEFRAMES[timeframe]
    result = ExchangeFlow(coin=coin, timeframe=timeframe)
    for exchange, venues in sorted(venues_by_exchange.items()):
        result.by_exchange[exchange] = {
            venue: (
                calculate_flow(rings, exchange, venue, coin, window_ms, now_ms)
                if venue in venues
                else None
            )
            for venue in (SPOT, PERP)
        }
    return result


UP = "up"
DOWN = "down"
FLAT = "flat"

# (spot trend, perp trend) -> signal, bias, strength; checked in order
SPOT_PERP_RULES = [
    ((UP, DOWN), "CAPITULATION_BOTTOM", "bullish", "strong"),
    ((UP, FLAT), "SPOT_ACCUMULATION", "bullish", "strong"),
    ((DOWN, UP), "FAKE_PUMP", "bearish", "strong"),
    ((DOWN, FLAT), "DISTRIBUTION", "bearish", "moderate"),
]


def trend(net: float, threshold: float) -> str:
    if net > threshold:
        return UP
    if net < -threshold:
        return DOWN
    return FLAT


def net_flow(
    rings: RingStore,
    venues_by_exchange: dict[str, set[str]],
    coin: str,
    venue: str,
    window_ms: int,
    now_ms: int,
) -> float | None:
    """Net taker notional on one venue type across exchanges; None if no exchange has it."""
    flows = [
        calculate_flow(rings, exchange, venue, coin, window_ms, now_ms)
        for exchange, venues in sorted(venues_by_exchange.items())
        if venue in venues
    ]
    if not flows:
        return None
    return sum(f.net for f in flows)


def spot_perp_divergence(spot_net: float, perp_net: float, threshold: float) -> dict:
    spot_trend = trend(spot_net, threshold)
    perp_trend = trend(perp_net, threshold)
    signal, bias, strength = "BALANCED", "neutral", "weak"
    for trends, rule_signal, rule_bias, rule_strength in SPOT_PERP_RULES:
        if (spot_trend, perp_trend) == trends:
            signal, bias, strength = rule_signal, rule_bias, rule_strength
            break
    return {
        "signal": signal,
        "bias": bias,
        "strength": strength,
        "spotNet": spot_net,
        "perpNet": perp_net,
        "spotTrend": spot_trend,
        "perpTrend": perp_trend,
    }
