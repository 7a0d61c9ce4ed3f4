# trader_bias/bias/engine.py
"""Directional bias from cross-exchange microstructure.

Each component maps a raw signal x to w * tanh(k * x / scale), with k chosen so
that |x| == scale lands on +/-0.5 before weighting. Missing inputs contribute 0.
"""

import logging
import math
from dataclasses import dataclass

from trader_bias.aggregator.engine import Aggregator
from trader_bias.aggregator.oi import calculate_oi_change, change_over_window, interpret_oi_price
from trader_bias.bias.liquidation_zones import LiquidationZones, calculate_liquidation_zones
from trader_bias.config import Config, ThresholdsConfig, WeightsConfig
from trader_bias.storage.models import (
    BEARISH,
    BULLISH,
    MODERATE,
    NEUTRAL,
    NONE,
    PROJECTION_4HR,
    PROJECTION_12HR,
    PROJECTION_DAILY,
    STRONG,
    WEAK,
    BiasReport,
    ComponentScore,
)
from trader_bias.storage.rings import (
    BUY_VOLUME,
    FUNDING_RATE,
    IMBALANCE,
    OPEN_INTEREST,
    SELL_VOLUME,
    TRADE_COUNT,
    WHALE_FLOW,
    WHALE_GROSS,
)

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
SUFFICIENCY_WINDOW_MS = 5 * MINUTE_MS
IMBALANCE_MEAN_MS = 5 * MINUTE_MS
BOOK_STALE_MS = MINUTE_MS
REFERENCE_MAX_AGE_MS = 5 * MINUTE_MS
INVALIDATION_ATR_MULT = 0.5
INVALIDATION_MIN_POINTS = 5

SQUASH_GAIN = math.atanh(0.5)

SCALES = {
    "orderbook": 20.0,  # imbalance, percent
    "cvd": 0.15,  # (buy - sell) / (buy + sell)
    "funding": 2.0,  # basis points
    "oi_delta": 1.0,  # percent
    "long_short": 0.2,  # top minus retail ratio
    "whale_flow": 0.3,  # net / gross whale notional
}

SHORT_WEIGHT = 0.4
LONG_WEIGHT = 0.6


@dataclass(frozen=True)
class HorizonProfile:
    cvd_windows_ms: tuple[int, int]
    oi_windows_ms: tuple[int, int]
    whale_window_ms: int
    price_window_ms: int


HORIZON_PROFILES = {
    PROJECTION_4HR: HorizonProfile(
        cvd_windows_ms=(15 * MINUTE_MS, HOUR_MS),
        oi_windows_ms=(HOUR_MS, 2 * HOUR_MS),
        whale_window_ms=15 * MINUTE_MS,
        price_window_ms=HOUR_MS,
    ),
    PROJECTION_12HR: HorizonProfile(
        cvd_windows_ms=(5 * MINUTE_MS, 15 * MINUTE_MS),
        oi_windows_ms=(15 * MINUTE_MS, HOUR_MS),
        whale_window_ms=15 * MINUTE_MS,
        price_window_ms=HOUR_MS,
    ),
    PROJECTION_DAILY: HorizonProfile(
        cvd_windows_ms=(15 * MINUTE_MS, 60 * MINUTE_MS),
        oi_windows_ms=(HOUR_MS, 4 * HOUR_MS),
        whale_window_ms=60 * MINUTE_MS,
        price_window_ms=4 * HOUR_MS,
    ),
}


def squash(u: float) -> float:
    return math.tanh(SQUASH_GAIN * u)


def _mean(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def blend(short: float | None, long: float | None) -> float | None:
    if short is None:
        return long
    if long is None:
        return short
    return SHORT_WEIGHT * short + LONG_WEIGHT * long


def label_direction(score: float, thresholds: ThresholdsConfig) -> str:
    if score >= thresholds.bull:
        return BULLISH
    if score <= thresholds.bear:
        return BEARISH
    return NEUTRAL


def label_strength(score: float, thresholds: ThresholdsConfig) -> str:
    magnitude = abs(score)
    if magnitude >= thresholds.strong:
        return STRONG
    if magnitude >= thresholds.moderate:
        return MODERATE
    if magnitude >= thresholds.weak:
        return WEAK
    return NONE


def invalidation_level(prices: list[float], direction: str) -> dict | None:
    """Swing extreme plus half the mean absolute step, on the side that breaks the bias."""
    prices = [p for p in prices if p > 0]
    if len(prices) < INVALIDATION_MIN_POINTS or direction == NEUTRAL:
        return None
    steps = [abs(b - a) for a, b in zip(prices, prices[1:])]
    buffer = INVALIDATION_ATR_MULT * sum(steps) / len(steps)
    current = prices[-1]
    if direction == BULLISH:
        level = min(prices) - buffer
        distance = (current - level) / current * 100
        side = "below"
    else:
        level = max(prices) + buffer
        distance = (level - current) / current * 100
        side = "above"
    return {"price": round(level, 2), "type": side, "distancePct": round(distance, 2)}


def score_components(
    raw: dict[str, float | None], weights: WeightsConfig
) -> tuple[float, dict[str, ComponentScore]]:
    components = {}
    total = 0.0
    for name, weight in weights.model_dump().items():
        x = raw.get(name)
        contribution = 0.0 if x is None else weight * squash(x / SCALES[name])
        components[name] = ComponentScore(contribution=contribution, weight=weight, raw=x)
        total += contribution
    return max(-1.0, min(1.0, total)), components


class BiasEngine:
    def __init__(self, aggregator: Aggregator, config: Config):
        self.aggregator = aggregator
        self.rings = aggregator.rings
        self.weights = config.weights
        self.horizon_weights = {PROJECTION_4HR: config.four_hour_weights}
        self.thresholds = config.thresholds
        self.positioning_stale_ms = config.polling.long_short_stale_seconds * 1000
        self.stale_ms = config.stall_ms

    def sample_count(self, coin: str, now_ms: int) -> int:
        """Non-empty trade buckets over the last five minutes, all exchanges."""
        return sum(
            ring.count_over_last(SUFFICIENCY_WINDOW_MS, now_ms)
            for _, ring in self.rings.find(coin, TRADE_COUNT)
        )

    def _orderbook(self, coin: str, now_ms: int) -> float | None:
        current, means = [], []
        for _, ring in self.rings.find(coin, IMBALANCE):
            latest = ring.latest()
            if latest is not None and now_ms - latest[0] <= BOOK_STALE_MS:
                current.append(latest[1])
            mean = ring.mean_over_last(IMBALANCE_MEAN_MS, now_ms)
            if mean is not None:
                means.append(mean)
        return blend(_mean(current), _mean(means))

    def _taker_ratio(self, coin: str, window_ms: int, now_ms: int) -> float | None:
        buy = sum(r.sum_over_last(window_ms, now_ms) for _, r in self.rings.find(coin, BUY_VOLUME))
        sell = sum(r.sum_over_last(window_ms, now_ms) for _, r in self.rings.find(coin, SELL_VOLUME))
        total = buy + sell
        if total <= 0:
            return None
        return (buy - sell) / total

    def _funding(self, coin: str, now_ms: int) -> float | None:
        rates, deltas = [], []
        for _, ring in self.rings.find(coin, FUNDING_RATE):
            latest = ring.latest()
            if latest is None:
                continue
            rates.append(latest[1])
            hour_ago = ring.first_over_last(HOUR_MS, now_ms)
            if hour_ago is not None:
                deltas.append(latest[1] - hour_ago)
        if not rates:
            return None
        # contrarian: funding above the 1bp baseline, or rising, leans bearish
        rate_bps = _mean(rates) * 10_000
        delta_bps = (_mean(deltas) or 0.0) * 10_000
        return -(rate_bps - 1) - 2 * delta_bps

    def _oi_change(self, coin: str, window_ms: int, now_ms: int) -> float | None:
        changes = []
        for _, ring in self.rings.find(coin, OPEN_INTEREST):
            change = change_over_window(ring, window_ms, now_ms)
            if change is not None:
                changes.append(change)
        return _mean(changes)

    def price_change(self, coin: str, window_ms: int, now_ms: int) -> float | None:
        for _, ring in self.aggregator.mark_rings(coin):
            series = ring.series(window_ms, now_ms)
            if len(series) >= 2 and series[0][1] > 0:
                return (series[-1][1] - series[0][1]) / series[0][1] * 100
        return None

    def _whale_flow(self, coin: str, window_ms: int, now_ms: int) -> float | None:
        net = sum(r.sum_over_last(window_ms, now_ms) for _, r in self.rings.find(coin, WHALE_FLOW))
        gross = sum(r.sum_over_last(window_ms, now_ms) for _, r in self.rings.find(coin, WHALE_GROSS))
        if gross <= 0:
            return None
        return net / gross

    def report(
        self, coin: str, horizon: str = PROJECTION_12HR, now_ms: int | None = None
    ) -> BiasReport:
        """Score ``coin`` with every window ending at now_ms (default: newest event time)."""
        if horizon not in HORIZON_PROFILES:
            raise ValueError(f"Unknown horizon: {horizon}")
        profile = HORIZON_PROFILES[horizon]
        now = self.aggregator.clock() if now_ms is None else now_ms
        last_event = self.aggregator.last_event_ms
        stale = last_event is None or now - last_event > self.stale_ms

        price_change = self.price_change(coin, profile.price_window_ms, now)
        oi_short, oi_long = (self._oi_change(coin, w, now) for w in profile.oi_windows_ms)
        oi_blend = blend(oi_short, oi_long)
        oi_delta = None
        if oi_blend is not None and price_change is not None:
            oi_delta = math.copysign(oi_blend, price_change) if price_change else 0.0

        positioning = self.aggregator.positioning(coin, self.positioning_stale_ms, now_ms=now)
        cvd_short, cvd_long = profile.cvd_windows_ms

        raw = {
            "orderbook": self._orderbook(coin, now),
            "cvd": blend(
                self._taker_ratio(coin, cvd_short, now), self._taker_ratio(coin, cvd_long, now)
            ),
            "funding": self._funding(coin, now),
            "oi_delta": oi_delta,
            "long_short": positioning["divergence"] if positioning else None,
            "whale_flow": self._whale_flow(coin, profile.whale_window_ms, now),
        }
        weights = self.horizon_weights.get(horizon, self.weights)
        score, components = score_components(raw, weights)
        count = self.sample_count(coin, now)
        direction = label_direction(score, self.thresholds)

        context: dict = {"priceChangePct": price_change}
        if positioning:
            context["positioning"] = {
                "topRatio": positioning["top_ratio"],
                "globalRatio": positioning["global_ratio"],
                "divergence": positioning["divergence"],
                "percentile": positioning["percentile"],
                "level": positioning["level"],
            }
        if oi_long is not None and price_change is not None:
            context["oiRegime"] = interpret_oi_price(oi_long, price_change)
        if horizon == PROJECTION_4HR:
            context["invalidation"] = self._invalidation(coin, direction, now)

        report = BiasReport(
            coin=coin,
            timestamp_ms=now,
            score=score,
            strength=label_strength(score, self.thresholds),
            direction=direction,
            components=components,
            insufficient=count < self.thresholds.min_samples,
            sample_count=count,
            reference_price=self.aggregator.current_price(coin, now, REFERENCE_MAX_AGE_MS),
            stale=stale,
            horizon=horizon,
            context=context,
        )
        logger.debug(f"{coin} {horizon} bias {score:+.3f} ({report.direction}, n={count})")
        return report

    def _invalidation(self, coin: str, direction: str, now_ms: int) -> dict | None:
        for _, ring in self.aggregator.mark_rings(coin):
            series = ring.series(4 * HOUR_MS, now_ms)
            if series:
                return invalidation_level([v for _, v in series], direction)
        return None

    def liquidation_zones(self, coin: str, now_ms: int | None = None) -> LiquidationZones | None:
        now = self.aggregator.clock() if now_ms is None else now_ms
        rates = []
        for _, ring in self.rings.find(coin, FUNDING_RATE):
            latest = ring.latest()
            if latest is not None:
                rates.append(latest[1])

        current_oi = past_oi = 0.0
        for _, ring in self.rings.find(coin, OPEN_INTEREST):
            latest = ring.latest()
            oldest = ring.first_over_last(DAY_MS, now)
            if latest is not None and oldest is not None:
                current_oi += latest[1]
                past_oi += oldest

        return calculate_liquidation_zones(
            coin,
            self.aggregator.current_price(coin, now, REFERENCE_MAX_AGE_MS),
            avg_funding=_mean(rates) or 0.0,
            aggregated_oi=current_oi,
            oi_velocity_pct=calculate_oi_change(current_oi, past_oi),
        )
