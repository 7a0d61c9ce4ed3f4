# tests/aggregator/test_aggregator.py
import pytest

from trader_bias.aggregator.engine import Aggregator, downsample
from trader_bias.config import Config
from trader_bias.storage.models import (
    BookSnapshot,
    MetricSample,
    PositioningSample,
    TradeEvent,
)
from trader_bias.storage.rings import CVD, MARK_PRICE, WHALE_FLOW

T0 = 1_706_600_000_000


def _trade(ts, side="BUY", size=1.0, price=100_000.0, trade_id="1", venue="perp", coin="BTC"):
    return TradeEvent(
        exchange="binance",
        venue=venue,
        symbol=f"{coin}USDT",
        coin=coin,
        price=price,
        size=size,
        side=side,
        trade_id=trade_id,
        timestamp_ms=ts,
    )


@pytest.fixture
def aggregator():
    agg = Aggregator(Config())
    agg.register_venue("binance", "perp")
    agg.register_venue("binance", "spot")
    return agg


def test_trade_updates_cvd_and_snapshot(aggregator):
    aggregator.process(_trade(T0, "BUY", 2.0))
    aggregator.process(_trade(T0 + 1000, "SELL", 0.5, trade_id="2"))

    snap = aggregator.snapshot("binance", "BTC")
    assert snap is not None
    assert snap.cvd == 1.5
    assert snap.rolling_5m_delta == 1.5
    assert snap.updated_at == T0 + 1000


def test_cvd_difference_equals_signed_volume(aggregator):
    aggregator.process(_trade(T0, "BUY", 1.0))
    cvd_t1 = aggregator.snapshot("binance", "BTC").cvd
    aggregator.process(_trade(T0 + 500, "SELL", 0.25, trade_id="2"))
    aggregator.process(_trade(T0 + 1500, "BUY", 3.0, trade_id="3"))
    cvd_t2 = aggregator.snapshot("binance", "BTC").cvd

    assert cvd_t2 - cvd_t1 == pytest.approx(-0.25 + 3.0)


def test_untracked_coin_is_dropped(aggregator):
    aggregator.process(_trade(T0, coin="DOGE"))

    assert aggregator.snapshot("binance", "DOGE") is None
    assert aggregator.counters.get("events_untracked") == 1


def test_non_positive_trade_is_rejected(aggregator):
    aggregator.process(_trade(T0, size=0.0))
    aggregator.process(_trade(T0, price=-1.0, trade_id="2"))

    assert aggregator.rings.get("binance", "perp", "BTC", "trade_count") is None
    assert aggregator.snapshot("binance", "BTC") is None
    assert aggregator.counters.get("events_invalid") == 2


def test_late_trade_is_dropped(aggregator):
    aggregator.process(_trade(T0 + 10_000, "BUY", 1.0))
    aggregator.process(_trade(T0, "BUY", 5.0, trade_id="2"))

    assert aggregator.snapshot("binance", "BTC").cvd == 1.0
    assert aggregator.counters.get("events_late") == 1


def test_midnight_reset_policy():
    agg = Aggregator(Config(cvd_reset="midnight_utc"))
    day = 86_400_000
    midnight = (T0 // day + 1) * day
    agg.process(_trade(midnight - 1000, "BUY", 4.0))
    agg.process(_trade(midnight + 1000, "BUY", 1.0, trade_id="2"))

    assert agg.snapshot("binance", "BTC").cvd == 1.0


def test_whale_trades_feed_whale_ring(aggregator):
    aggregator.process(_trade(T0, "SELL", 2.0))  # 200k notional
    aggregator.process(_trade(T0 + 100, "BUY", 0.1, trade_id="2"))  # 10k notional

    ring = aggregator.rings.get("binance", "perp", "BTC", WHALE_FLOW)
    assert ring.sum_over_last(60_000, T0 + 100) == -200_000.0


def test_spot_trade_feeds_mark_ring_not_perp_snapshot(aggregator):
    aggregator.process(_trade(T0, "BUY", 1.0, price=99_000.0, venue="spot"))

    assert aggregator.rings.get("binance", "spot", "BTC", MARK_PRICE).value_at(T0) == 99_000.0
    assert aggregator.rings.get("binance", "spot", "BTC", CVD) is not None
    assert aggregator.snapshot("binance", "BTC") is None


def test_book_updates_imbalance_and_average(aggregator):
    book = BookSnapshot(
        exchange="binance",
        venue="perp",
        symbol="BTCUSDT",
        coin="BTC",
        timestamp_ms=T0,
        bids=((100.0, 3.0), (99.9, 1.0)),
        asks=((100.1, 1.0), (100.2, 1.0)),
    )
    aggregator.process(book)

    snap = aggregator.snapshot("binance", "BTC")
    assert snap.bid_volume == pytest.approx(399.9)
    assert snap.ask_volume == pytest.approx(200.3)
    assert snap.imbalance == pytest.approx(100 * (399.9 - 200.3) / (399.9 + 200.3))
    assert snap.avg_imbalance == pytest.approx(snap.imbalance)


def test_metric_sample_updates_snapshot_field(aggregator):
    aggregator.process(MetricSample("binance", "perp", "BTC", "open_interest", 5e9, T0))
    aggregator.process(MetricSample("binance", "perp", "BTC", "funding_rate", 0.0001, T0))
    aggregator.process(MetricSample("binance", "perp", "BTC", "mark_price", 100_500.0, T0))

    snap = aggregator.snapshot("binance", "BTC")
    assert snap.open_interest == 5e9
    assert snap.funding_rate == 0.0001
    assert snap.mark_price == 100_500.0
    assert aggregator.current_price("BTC") == 100_500.0


def test_price_at_prefers_perp_mark(aggregator):
    aggregator.process(_trade(T0, price=99_000.0, venue="spot"))
    aggregator.process(MetricSample("binance", "perp", "BTC", "mark_price", 100_000.0, T0))

    assert aggregator.price_at("BTC", T0) == 100_000.0
    assert aggregator.price_at("BTC", T0 + 60_000, tolerance_ms=5000) is None


def test_exchange_flow_reports_null_for_missing_venue(aggregator):
    aggregator.register_venue("okx", "perp")
    aggregator.process(_trade(T0, "BUY", 1.0))
    aggregator.process(_trade(T0 + 1, "SELL", 0.5, trade_id="2"))

    flow = aggregator.exchange_flow("BTC", "15m")
    assert flow.by_exchange["binance"]["perp"].buy == 100_000.0
    assert flow.by_exchange["binance"]["perp"].sell == 50_000.0
    assert flow.by_exchange["okx"]["spot"] is None
    assert flow.total.net == 50_000.0

    with pytest.raises(ValueError):
        aggregator.exchange_flow("BTC", "4h")



def test_whale_feed_keeps_large_trades_newest_first(aggregator):
    aggregator.process(_trade(T0, "BUY", 6.0, trade_id="a"))
    aggregator.process(_trade(T0 + 1, "SELL", 1.0, trade_id="small"))
    aggregator.process(_trade(T0 + 2, "SELL", 300.0, price=2_000.0, trade_id="b", coin="ETH"))
    aggregator.process(_trade(T0 + 3, "SELL", 7.0, trade_id="c"))

    assert [t.trade_id for t in aggregator.whale_trades()] == ["c", "b", "a"]
    assert [t.trade_id for t in aggregator.whale_trades(limit=1)] == ["c"]
    assert [t.trade_id for t in aggregator.whale_trades(coin="ETH")] == ["b"]
    assert aggregator.whale_trades()[0].notional == 700_000.0


def test_spot_perp_needs_both_venue_types():
    agg = Aggregator(Config())
    agg.process(_trade(T0, "BUY", 2.0, venue="spot"))
    assert agg.spot_perp("BTC") is None

    agg.process(_trade(T0 + 1, "SELL", 2.0, trade_id="2"))
    result = agg.spot_perp("BTC")
    assert result["signal"] == "CAPITULATION_BOTTOM"
    assert result["spotNet"] == 200_000.0
    assert result["perpNet"] == -200_000.0


def test_last_event_ms():
    agg = Aggregator(Config())
    assert agg.last_event_ms is None
    agg.process(_trade(T0))
    assert agg.last_event_ms == T0


def test_positioning_divergence(aggregator):
    aggregator.process(PositioningSample("BTC", top_ratio=1.8, global_ratio=1.2, timestamp_ms=T0))

    result = aggregator.positioning("BTC")
    assert result["divergence"] == pytest.approx(0.6)
    assert result["level"] == "none"
    assert aggregator.positioning("ETH") is None


def test_downsample_sum_and_last():
    series = [(0, 1.0), (1000, 2.0), (60_000, 3.0), (61_000, 4.0)]

    assert downsample(series, 60_000, summed=True) == [(0, 3.0), (60_000, 7.0)]
    assert downsample(series, 60_000, summed=False) == [(0, 2.0), (60_000, 4.0)]
