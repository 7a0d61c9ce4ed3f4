# trader_bias/storage/models.py
import math
from dataclasses import asdict, dataclass, field
from typing import Any

BUY = "BUY"
SELL = "SELL"

SPOT = "spot"
PERP = "perp"

BULLISH = "BULLISH"
BEARISH = "BEARISH"
NEUTRAL = "NEUTRAL"

STRONG = "STRONG"
MODERATE = "MODERATE"
WEAK = "WEAK"
NONE = "NONE"

CORRECT = "correct"
INCORRECT = "incorrect"
NEUTRAL_OUTCOME = "neutral"

PROJECTION_12HR = "12hr"
PROJECTION_DAILY = "daily"
PROJECTION_4HR = "4hr"


@dataclass(frozen=True)
class TradeEvent:
    exchange: str
    venue: str  # spot / perp
    symbol: str  # native symbol, e.g. BTCUSDT
    coin: str  # BTC / ETH / SOL
    price: float
    size: float
    side: str  # taker side: BUY / SELL
    trade_id: str
    timestamp_ms: int

    @property
    def notional(self) -> float:
        return self.price * self.size

    @property
    def is_valid(self) -> bool:
        return self.price > 0 and self.size > 0 and math.isfinite(self.notional)


@dataclass(frozen=True)
class BookSnapshot:
    exchange: str
    venue: str
    symbol: str
    coin: str
    timestamp_ms: int
    bids: tuple[tuple[float, float], ...]  # (price, size), best first
    asks: tuple[tuple[float, float], ...]


@dataclass(frozen=True)
class MetricSample:
    exchange: str
    venue: str
    coin: str
    kind: str  # mark_price / open_interest / funding_rate
    value: float
    timestamp_ms: int


@dataclass(frozen=True)
class PositioningSample:
    coin: str
    top_ratio: float  # top trader long/short position ratio
    global_ratio: float  # all-accounts long/short ratio
    timestamp_ms: int


@dataclass(frozen=True)
class Snapshot:
    exchange: str
    coin: str
    mark_price: float | None = None
    bid_volume: float | None = None
    ask_volume: float | None = None
    imbalance: float | None = None
    avg_imbalance: float | None = None
    open_interest: float | None = None
    funding_rate: float | None = None
    cvd: float = 0.0
    rolling_5m_delta: float = 0.0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "markPrice": self.mark_price,
            "bidVolume": self.bid_volume,
            "askVolume": self.ask_volume,
            "imbalance": self.imbalance,
            "avgImbalance": self.avg_imbalance,
            "openInterest": self.open_interest,
            "fundingRate": self.funding_rate,
            "cvd": self.cvd,
            "rolling5mDelta": self.rolling_5m_delta,
            "updatedAt": self.updated_at,
        }


@dataclass
class ComponentScore:
    contribution: float
    weight: float
    raw: float | None


@dataclass
class BiasReport:
    coin: str
    timestamp_ms: int
    score: float
    strength: str
    direction: str
    components: dict[str, ComponentScore] = field(default_factory=dict)
    insufficient: bool = False
    sample_count: int = 0
    reference_price: float | None = None
    stale: bool = False
    horizon: str = PROJECTION_12HR
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "coin": self.coin,
            "timestampMs": self.timestamp_ms,
            "horizon": self.horizon,
            "score": self.score,
            "strength": self.strength,
            "direction": self.direction,
            "insufficient": self.insufficient,
            "sampleCount": self.sample_count,
            "stale": self.stale,
            "referencePrice": self.reference_price,
            "components": {name: asdict(c) for name, c in self.components.items()},
            "context": self.context,
        }


@dataclass
class Prediction:
    id: str
    coin: str
    projection_type: str  # 4hr / 12hr / daily
    predicted_direction: str
    strength: str
    score: float
    emitted_at: int  # ms
    horizon_ms: int
    reference_price: float
    evaluated_at: int | None = None
    actual_price_change_pct: float | None = None
    outcome: str | None = None  # correct / incorrect / neutral
    evaluated: bool = False

    @property
    def due_at(self) -> int:
        return self.emitted_at + self.horizon_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "coin": self.coin,
            "projectionType": self.projection_type,
            "predictedDirection": self.predicted_direction,
            "strength": self.strength,
            "score": self.score,
            "emittedAt": self.emitted_at,
            "horizonMs": self.horizon_ms,
            "referencePrice": self.reference_price,
            "evaluatedAt": self.evaluated_at,
            "actualPriceChangePct": self.actual_price_change_pct,
            "outcome": self.outcome,
            "evaluated": self.evaluated,
        }


EMITTED = "emitted"
SKIPPED = "skipped"


@dataclass
class ProjectionCycle:
    coin: str
    projection_type: str
    fired_at: int
    status: str  # emitted / skipped
    reason: str | None = None
    score: float | None = None
    prediction_id: str | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "coin": self.coin,
            "projectionType": self.projection_type,
            "firedAt": self.fired_at,
            "status": self.status,
            "reason": self.reason,
            "score": self.score,
            "predictionId": self.prediction_id,
        }


@dataclass(frozen=True)
class WhaleTrade:
    exchange: str
    venue: str
    coin: str
    price: float
    size: float
    side: str
    trade_id: str
    timestamp_ms: int

    @property
    def notional(self) -> float:
        return self.price * self.size

    def to_dict(self) -> dict[str, Any]:
        return {
            "exchange": self.exchange,
            "venue": self.venue,
            "coin": self.coin,
            "price": self.price,
            "size": self.size,
            "side": self.side,
            "notional": self.notional,
            "tradeId": self.trade_id,
            "timestampMs": self.timestamp_ms,
        }
