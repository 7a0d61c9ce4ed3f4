# trader_bias/aggregator/engine.py
import asyncio
import logging
import time
from collections import deque
from dataclasses import replace

from trader_bias.aggregator.channel import Event, EventChannel
from trader_bias.aggregator.flow import (
    FLOW_TIMEFRAMES,
    ExchangeFlow,
    calculate_exchange_flow,
    net_flow,
    spot_perp_divergence,
)
from trader_bias.aggregator.insight import calculate_divergence
from trader_bias.aggregator.orderbook import calculate_depth
from trader_bias.config import Config
from trader_bias.metrics import Counters
from trader_bias.storage.models import (
    BUY,
    PERP,
    SPOT,
    BookSnapshot,
    MetricSample,
    PositioningSample,
    Snapshot,
    TradeEvent,
    WhaleTrade,
)
from trader_bias.storage.rings import (
    BUY_VOLUME,
    CVD,
    DEFAULT_TOLERANCE_MS,
    FUNDING_RATE,
    IMBALANCE,
    MARK_PRICE,
    OPEN_INTEREST,
    SELL_VOLUME,
    SUM,
    TRADE_COUNT,
    WHALE_FLOW,
    WHALE_GROSS,
    RingStore,
)

logger = logging.getLogger(__name__)

FIVE_MIN_MS = 5 * 60 * 1000
DAY_MS = 24 * 60 * 60 * 1000
PRICE_PREFERENCE = ["binance", "bybit", "okx", "coinbase"]
DIVERGENCE_HISTORY = 288
WHALE_FEED_SIZE = 500

METRIC_FIELDS = {
    MARK_PRICE: "mark_price",
    OPEN_INTEREST: "open_interest",
    FUNDING_RATE: "funding_rate",
}


class Aggregator:
    """Sink for every adapter; the only writer of rings and snapshots."""

    def __init__(
        self,
        config: Config,
        rings: RingStore | None = None,
        counters: Counters | None = None,
        channel: EventChannel | None = None,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
    ):
        self.coins = set(config.coins)
        self.counters = counters or Counters()
        self.rings = rings or RingStore(config.retention, tolerance_ms)
        self.channel = channel or EventChannel(config.backpressure.queue_capacity, self.counters)
        self.whale_usd = config.thresholds.whale_usd
        self.whale_feed_usd = config.thresholds.whale_feed_usd
        self.spot_perp_usd = config.thresholds.spot_perp_usd
        self.cvd_reset = config.cvd_reset
        self.tolerance_ms = tolerance_ms
        self.now_ms = 0

        self._venues: dict[str, set[str]] = {}
        self._snapshots: dict[tuple[str, str], Snapshot] = {}
        self._cvd: dict[tuple[str, str, str], float] = {}
        self._cvd_day: dict[tuple[str, str, str], int] = {}
        self._last_ts: dict[tuple[str, str, str], int] = {}
        self._positioning: dict[str, PositioningSample] = {}
        self._divergence_history: dict[str, deque[float]] = {}
        self._whale_feed: deque[WhaleTrade] = deque(maxlen=WHALE_FEED_SIZE)

    def register_venue(self, exchange: str, venue: str) -> None:
        self._venues.setdefault(exchange, set()).add(venue)

    def exchanges(self) -> list[str]:
        return sorted(self._venues)

    def primary_venue(self, exchange: str) -> str:
        venues = self._venues.get(exchange, set())
        return PERP if PERP in venues or not venues else SPOT

    def emit(self, event: Event) -> None:
        self.channel.put(event)

    async def run(self) -> None:
        while True:
            event = await self.channel.get()
            try:
                self.process(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.counters.inc("aggregator_errors")
                logger.error(f"Failed to process {type(event).__name__}: {e}")

    def process(self, event: Event) -> None:
        if isinstance(event, TradeEvent):
            self._on_trade(event)
        elif isinstance(event, BookSnapshot):
            self._on_book(event)
        elif isinstance(event, MetricSample):
            self._on_metric(event)
        elif isinstance(event, PositioningSample):
            self._on_positioning(event)

    def clock(self) -> int:
        return self.now_ms or int(time.time() * 1000)

    @property
    def last_event_ms(self) -> int | None:
        return self.now_ms or None

    def _tracked(self, coin: str) -> bool:
        if coin in self.coins:
            return True
        self.counters.inc("events_untracked")
        return False

    def _advance_clock(self, timestamp_ms: int) -> None:
        if timestamp_ms > self.now_ms:
            self.now_ms = timestamp_ms

    def _publish(self, exchange: str, coin: str, **changes) -> None:
        key = (exchange, coin)
        current = self._snapshots.get(key) or Snapshot(exchange=exchange, coin=coin)
        self._snapshots[key] = replace(current, **changes)

    def _on_trade(self, trade: TradeEvent) -> None:
        if not self._tracked(trade.coin):
            return
        if not trade.is_valid:
            self.counters.inc("events_invalid")
            return

        order_key = (trade.exchange, trade.venue, trade.symbol)
        last = self._last_ts.get(order_key)
        if last is not None and trade.timestamp_ms < last - self.tolerance_ms:
            self.counters.inc("events_late")
            return
        if last is None or trade.timestamp_ms > last:
            self._last_ts[order_key] = trade.timestamp_ms

        self.register_venue(trade.exchange, trade.venue)
        self._advance_clock(trade.timestamp_ms)
        self.counters.inc("events_ingested")

        ex, venue, coin, ts = trade.exchange, trade.venue, trade.coin, trade.timestamp_ms
        notional = trade.notional
        sign = 1 if trade.side == BUY else -1

        self.rings.add(ex, venue, coin, BUY_VOLUME if sign > 0 else SELL_VOLUME, ts, notional)
        self.rings.add(ex, venue, coin, TRADE_COUNT, ts, 1)
        if notional >= self.whale_usd:
            self.rings.add(ex, venue, coin, WHALE_FLOW, ts, sign * notional)
            self.rings.add(ex, venue, coin, WHALE_GROSS, ts, notional)
        if notional >= self.whale_feed_usd:
            self._whale_feed.appendleft(
                WhaleTrade(ex, venue, coin, trade.price, trade.size, trade.side, trade.trade_id, ts)
            )

        cvd_ring = self.rings.ring(ex, venue, coin, CVD)
        if cvd_ring.add(ts, sign * trade.size):
            cvd_key = (ex, venue, coin)
            day = ts // DAY_MS
            if self.cvd_reset == "midnight_utc" and self._cvd_day.get(cvd_key) != day:
                self._cvd[cvd_key] = 0.0
            self._cvd_day[cvd_key] = day
            self._cvd[cvd_key] = self._cvd.get(cvd_key, 0.0) + sign * trade.size

        if venue == SPOT:
            self.rings.add(ex, venue, coin, MARK_PRICE, ts, trade.price)

        if venue == self.primary_venue(ex):
            changes = {
                "cvd": self._cvd.get((ex, venue, coin), 0.0),
                "rolling_5m_delta": cvd_ring.sum_over_last(FIVE_MIN_MS, ts),
                "updated_at": ts,
            }
            if venue == SPOT:
                changes["mark_price"] = trade.price
            self._publish(ex, coin, **changes)

    def _on_book(self, book: BookSnapshot) -> None:
        if not self._tracked(book.coin):
            return
        depth = calculate_depth(book)
        if depth is None:
            self.counters.inc("books_empty")
            return

        self.register_venue(book.exchange, book.venue)
        self._advance_clock(book.timestamp_ms)
        self.counters.inc("books_ingested")

        ring = self.rings.ring(book.exchange, book.venue, book.coin, IMBALANCE)
        ring.add(book.timestamp_ms, depth.imbalance)
        if book.venue == self.primary_venue(book.exchange):
            self._publish(
                book.exchange,
                book.coin,
                bid_volume=depth.bid_volume,
                ask_volume=depth.ask_volume,
                imbalance=depth.imbalance,
                avg_imbalance=ring.mean_over_last(FIVE_MIN_MS, book.timestamp_ms),
                updated_at=book.timestamp_ms,
            )

    def _on_metric(self, sample: MetricSample) -> None:
        if not self._tracked(sample.coin):
            return
        if sample.kind not in METRIC_FIELDS:
            logger.warning(f"Unknown metric kind from {sample.exchange}: {sample.kind}")
            return

        self.register_venue(sample.exchange, sample.venue)
        self._advance_clock(sample.timestamp_ms)
        self.counters.inc("metrics_ingested")

        accepted = self.rings.add(
            sample.exchange, sample.venue, sample.coin, sample.kind, sample.timestamp_ms, sample.value
        )
        if accepted and sample.venue == self.primary_venue(sample.exchange):
            self._publish(
                sample.exchange,
                sample.coin,
                updated_at=sample.timestamp_ms,
                **{METRIC_FIELDS[sample.kind]: sample.value},
            )

    def _on_positioning(self, sample: PositioningSample) -> None:
        if not self._tracked(sample.coin):
            return
        self._advance_clock(sample.timestamp_ms)
        self._positioning[sample.coin] = sample
        history = self._divergence_history.setdefault(sample.coin, deque(maxlen=DIVERGENCE_HISTORY))
        history.append(abs(sample.top_ratio - sample.global_ratio))

    def snapshot(self, exchange: str, coin: str) -> Snapshot | None:
        return self._snapshots.get((exchange, coin))

    def snapshots(self, exchange: str) -> dict[str, Snapshot]:
        return {coin: snap for (ex, coin), snap in self._snapshots.items() if ex == exchange}

    def exchange_flow(self, coin: str, timeframe: str, now_ms: int | None = None) -> ExchangeFlow:
        if timeframe not in FLOW_TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe}")
        now = self.clock() if now_ms is None else now_ms
        return calculate_exchange_flow(self.rings, self._venues, coin, timeframe, now)

    def spot_perp(self, coin: str, now_ms: int | None = None) -> dict | None:
        """Five-minute spot vs perp net taker flow; None until both venue types report."""
        now = self.clock() if now_ms is None else now_ms
        spot = net_flow(self.rings, self._venues, coin, SPOT, FIVE_MIN_MS, now)
        perp = net_flow(self.rings, self._venues, coin, PERP, FIVE_MIN_MS, now)
        if spot is None or perp is None:
            return None
        return spot_perp_divergence(spot, perp, self.spot_perp_usd)

    def whale_trades(self, limit: int = 100, coin: str | None = None) -> list[WhaleTrade]:
        """Most recent feed-sized trades, newest first."""
        trades = [t for t in self._whale_feed if coin is None or t.coin == coin]
        return trades[:limit]

    def positioning(
        self, coin: str, max_age_ms: int | None = None, now_ms: int | None = None
    ) -> dict | None:
        sample = self._positioning.get(coin)
        if sample is None:
            return None
        now = self.clock() if now_ms is None else now_ms
        if max_age_ms is not None and now - sample.timestamp_ms > max_age_ms:
            return None
        # exclude the newest entry, which is the sample itself
        history = list(self._divergence_history.get(coin, []))[:-1]
        result = calculate_divergence(sample.top_ratio, sample.global_ratio, history)
        result.update(
            top_ratio=sample.top_ratio,
            global_ratio=sample.global_ratio,
            timestamp_ms=sample.timestamp_ms,
        )
        return result

    def mark_rings(self, coin: str):
        rings = self.rings.find(coin, MARK_PRICE)

        def rank(item) -> tuple[int, int]:
            (exchange, venue, _, _), _ = item
            pref = PRICE_PREFERENCE.index(exchange) if exchange in PRICE_PREFERENCE else 99
            return (0 if venue == PERP else 1, pref)

        return sorted(rings, key=rank)

    def price_at(self, coin: str, timestamp_ms: int, tolerance_ms: int = 0) -> float | None:
        for _, ring in self.mark_rings(coin):
            price = ring.value_at(timestamp_ms, tolerance_ms)
            if price is not None:
                return price
        return None

    def current_price(
        self, coin: str, as_of_ms: int | None = None, max_age_ms: int | None = None
    ) -> float | None:
        """Newest positive mark, skipping marks older than max_age_ms at as_of_ms."""
        for _, ring in self.mark_rings(coin):
            latest = ring.latest()
            if latest is None or latest[1] <= 0:
                continue
            if as_of_ms is not None and max_age_ms is not None and as_of_ms - latest[0] > max_age_ms:
                continue
            return latest[1]
        return None

    def history(
        self, exchange: str, coin: str, metrics: list[str], window_ms: int, step_ms: int = 0
    ) -> dict[str, list[tuple[int, float]]]:
        venue = self.primary_venue(exchange)
        now = self.clock()
        out: dict[str, list[tuple[int, float]]] = {}
        for metric in metrics:
            ring = self.rings.get(exchange, venue, coin, metric)
            if ring is None:
                out[metric] = []
                continue
            series = ring.series(window_ms, now)
            if step_ms > ring.bucket_ms:
                series = downsample(series, step_ms, summed=ring.aggregate == SUM)
            out[metric] = series
        return out


def downsample(
    series: list[tuple[int, float]], step_ms: int, summed: bool
) -> list[tuple[int, float]]:
    """Regroup an ascending series into step_ms buckets (sum or last value)."""
    grouped: dict[int, float] = {}
    for start, value in series:
        key = start - start % step_ms
        if summed:
            grouped[key] = grouped.get(key, 0.0) + value
        else:
            grouped[key] = value
    return list(grouped.items())
