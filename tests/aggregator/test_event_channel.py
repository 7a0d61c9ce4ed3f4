# tests/aggregator/test_event_channel.py
import asyncio

import pytest

from trader_bias.aggregator.channel import EventChannel
from trader_bias.metrics import Counters
from trader_bias.storage.models import BookSnapshot, MetricSample, TradeEvent


def _trade(trade_id: str) -> TradeEvent:
    return TradeEvent("binance", "perp", "BTCUSDT", "BTC", 100.0, 1.0, "BUY", trade_id, 1000)


def _mark(value: float) -> MetricSample:
    return MetricSample("binance", "perp", "BTC", "mark_price", value, 1000)


def test_overflow_drops_oldest_trade():
    counters = Counters()
    channel = EventChannel(capacity=2, counters=counters)
    for i in range(3):
        channel.put(_trade(str(i)))

    assert counters.get("events_dropped") == 1
    assert channel.get_nowait().trade_id == "1"
    assert channel.get_nowait().trade_id == "2"
    assert channel.get_nowait() is None


def test_metrics_coalesce_latest_wins():
    counters = Counters()
    channel = EventChannel(capacity=1, counters=counters)
    channel.put(_mark(1.0))
    channel.put(_mark(2.0))
    channel.put(_trade("a"))
    channel.put(_trade("b"))

    assert len(channel) == 2
    assert counters.get("events_coalesced") == 1
    assert channel.get_nowait().value == 2.0
    assert channel.get_nowait().trade_id == "b"


def test_books_coalesce_per_symbol():
    channel = EventChannel()
    book = BookSnapshot("okx", "perp", "BTC-USDT-SWAP", "BTC", 1000, ((1.0, 1.0),), ((2.0, 1.0),))
    other = BookSnapshot("okx", "perp", "ETH-USDT-SWAP", "ETH", 1000, ((1.0, 1.0),), ((2.0, 1.0),))
    channel.put(book)
    channel.put(book)
    channel.put(other)

    assert len(channel) == 2


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        EventChannel(capacity=0)


async def test_get_waits_for_put():
    channel = EventChannel()

    async def producer():
        await asyncio.sleep(0.01)
        channel.put(_trade("x"))

    task = asyncio.create_task(producer())
    event = await asyncio.wait_for(channel.get(), timeout=1)
    await task

    assert event.trade_id == "x"
