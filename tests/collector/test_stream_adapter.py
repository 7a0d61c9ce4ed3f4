# tests/collector/test_stream_adapter.py
import asyncio
import json
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from trader_bias.aggregator.engine import Aggregator
from trader_bias.collector.base import AdapterState, StreamAdapter, TradeIdCache, backoff_delay
from trader_bias.collector.venues import get_profile
from trader_bias.config import Config, ExchangeConfig, ReconnectConfig
from trader_bias.errors import SubscriptionRejected

T0 = 1706600000000
BINANCE_ACK = json.dumps({"result": None, "id": 1})


class FakeWebSocket:
    def __init__(self, frames=()):
        self.sent: list[str] = []
        self.closed = False
        self._frames: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.push(frame)

    def push(self, frame) -> None:
        self._frames.put_nowait(frame)

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def recv(self):
        frame = await self._frames.get()
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self) -> None:
        self.closed = True


def _agg_trade(trade_id: int, side_maker: bool = False) -> str:
    return json.dumps(
        {
            "stream": "btcusdt@aggTrade",
            "data": {
                "e": "aggTrade",
                "s": "BTCUSDT",
                "a": trade_id,
                "p": "100000",
                "q": "0.5",
                "T": T0 + trade_id,
                "m": side_maker,
            },
        }
    )


async def _until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def _adapter(connect, sink, profile="binance", config=None, streams=("trades",)):
    config = config or Config(reconnect=ReconnectConfig(base_ms=1, cap_ms=2))
    return StreamAdapter(
        get_profile(profile) if isinstance(profile, str) else profile,
        ExchangeConfig(symbols=["BTC"], streams=list(streams)),
        sink,
        config,
        connect=connect,
        rng=lambda: 0.0,
    )


def test_backoff_delay():
    assert backoff_delay(0, 1000, 30000, rng=lambda: 0.5) == 1.0
    assert backoff_delay(3, 1000, 30000, rng=lambda: 0.5) == 8.0
    assert backoff_delay(10, 1000, 30000, rng=lambda: 0.5) == 30.0
    assert backoff_delay(0, 1000, 30000, rng=lambda: 0.0) == 0.5
    assert backoff_delay(10, 1000, 30000, rng=lambda: 1.0) == 45.0


def test_trade_id_cache_evicts_oldest():
    cache = TradeIdCache(size=2)
    assert not cache.seen("perp", "BTCUSDT", "a")
    assert not cache.seen("perp", "BTCUSDT", "b")
    assert cache.seen("perp", "BTCUSDT", "a")
    assert not cache.seen("perp", "BTCUSDT", "c")
    # "b" was least recently seen
    assert not cache.seen("perp", "BTCUSDT", "b")
    assert not cache.seen("spot", "BTCUSDT", "a")


async def test_subscribes_and_suppresses_duplicate_trades():
    config = Config()
    aggregator = Aggregator(config)
    ws = FakeWebSocket([BINANCE_ACK, _agg_trade(1), _agg_trade(1), _agg_trade(2, side_maker=True)])
    adapter = _adapter(AsyncMock(return_value=ws), aggregator.process, config=config)

    await adapter.start()
    await _until(lambda: adapter.counters.get("trades_duplicate") == 1 and adapter.last_event_ms)
    await _until(lambda: aggregator.snapshot("binance", "BTC") is not None
                 and aggregator.snapshot("binance", "BTC").updated_at == T0 + 2)

    assert adapter.state == AdapterState.SUBSCRIBED
    assert json.loads(ws.sent[0]) == {"method": "SUBSCRIBE", "params": ["btcusdt@aggTrade"], "id": 1}
    # one buy of 0.5 counted once, then one sell of 0.5
    assert aggregator.snapshot("binance", "BTC").cvd == 0.0
    assert adapter.last_event_ago_ms() is not None

    await adapter.stop()
    assert adapter.state == AdapterState.CLOSED
    assert ws.closed


async def test_subscription_rejection_is_fatal():
    ws = FakeWebSocket([json.dumps({"error": {"code": 2, "msg": "Invalid request"}, "id": 1})])
    connect = AsyncMock(return_value=ws)
    adapter = _adapter(connect, lambda e: None)

    await adapter.start()
    await _until(lambda: adapter.state == AdapterState.CLOSED)

    assert isinstance(adapter.error, SubscriptionRejected)
    assert connect.await_count == 1
    assert adapter.counters.get("subscriptions_rejected") == 1
    await adapter.stop()


async def test_missing_ack_reconnects(monkeypatch):
    monkeypatch.setattr("trader_bias.collector.base.ACK_WINDOW_S", 0.02)
    connect = AsyncMock(side_effect=lambda *a, **kw: FakeWebSocket())
    adapter = _adapter(connect, lambda e: None)

    await adapter.start()
    await _until(lambda: connect.await_count >= 3)
    await adapter.stop()

    assert adapter.counters.get("reconnects") >= 2
    assert adapter.attempt >= 2


async def test_connect_failure_backs_off_and_retries():
    ws = FakeWebSocket([BINANCE_ACK])
    connect = AsyncMock(side_effect=[OSError("refused"), ws])
    adapter = _adapter(connect, lambda e: None)

    await adapter.start()
    await _until(lambda: adapter.state == AdapterState.SUBSCRIBED)
    await adapter.stop()

    assert connect.await_count == 2
    assert adapter.counters.get("adapter_errors") == 1


async def test_stall_degrades_and_recovers():
    events = []
    ws = FakeWebSocket([BINANCE_ACK])
    config = Config(stall_ms=30, reconnect=ReconnectConfig(base_ms=1, cap_ms=2))
    adapter = _adapter(AsyncMock(return_value=ws), events.append, config=config)

    await adapter.start()
    await _until(lambda: adapter.state == AdapterState.DEGRADED)
    ws.push(_agg_trade(5))
    await _until(lambda: adapter.state == AdapterState.SUBSCRIBED and events)
    await adapter.stop()

    assert adapter.counters.get("adapter_stalls") >= 1
    assert events[0].trade_id == "5"


async def test_parse_errors_trigger_reconnect():
    first = FakeWebSocket([BINANCE_ACK] + ["not json"] * 10)
    second = FakeWebSocket([BINANCE_ACK])
    connect = AsyncMock(side_effect=[first, second])
    adapter = _adapter(connect, lambda e: None)

    await adapter.start()
    await _until(lambda: connect.await_count == 2 and adapter.state == AdapterState.SUBSCRIBED)
    await adapter.stop()

    assert adapter.counters.get("parse_errors") == 10
    assert first.closed


async def test_single_parse_error_is_dropped():
    events = []
    ws = FakeWebSocket([BINANCE_ACK, "{broken", _agg_trade(1)])
    adapter = _adapter(AsyncMock(return_value=ws), events.append)

    await adapter.start()
    await _until(lambda: len(events) == 1)
    await adapter.stop()

    assert adapter.counters.get("parse_errors") == 1
    assert adapter.state == AdapterState.CLOSED


async def test_okx_keepalive_ping():
    profile = replace(get_profile("okx"), ping_interval_s=0.02)
    ack = json.dumps({"event": "subscribe", "arg": {"channel": "trades", "instId": "BTC-USDT-SWAP"}})
    ws = FakeWebSocket([ack])
    adapter = _adapter(AsyncMock(return_value=ws), lambda e: None, profile=profile)

    await adapter.start()
    await _until(lambda: "ping" in ws.sent)
    ws.push("pong")
    await asyncio.sleep(0.01)
    await adapter.stop()

    assert adapter.counters.get("parse_errors") == 0


async def test_unsupported_streams_are_skipped():
    adapter = _adapter(AsyncMock(), lambda e: None, profile="coinbase", streams=("trades", "book"))
    assert adapter.streams == ["trades"]
    assert adapter.symbols == ["BTC-USD"]
    assert adapter.state == AdapterState.IDLE


@pytest.mark.parametrize("name", ["binance", "binance_spot", "bybit", "bybit_spot", "okx", "coinbase"])
def test_adapter_uses_profile_url(name):
    adapter = _adapter(AsyncMock(), lambda e: None, profile=name)
    assert adapter.url == get_profile(name).url


def test_zero_size_trade_is_not_emitted():
    events = []
    adapter = _adapter(AsyncMock(), events.append, profile="bybit")
    frame = {
        "topic": "publicTrade.BTCUSDT",
        "type": "snapshot",
        "ts": T0,
        "data": [
            {"T": T0, "s": "BTCUSDT", "S": "Buy", "v": "0", "p": "100000", "i": "z-1"},
            {"T": T0 + 1, "s": "BTCUSDT", "S": "Sell", "v": "0.2", "p": "100000", "i": "z-2"},
        ],
    }

    adapter._handle_frame(json.dumps(frame))

    assert [e.trade_id for e in events] == ["z-2"]
    assert adapter.counters.get("trades_invalid") == 1
    assert adapter.counters.get("parse_errors") == 0
