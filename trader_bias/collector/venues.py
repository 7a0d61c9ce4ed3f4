# trader_bias/collector/venues.py
"""Venue profiles: everything that differs between exchange streams.

A profile is a plain record looked up by name. The adapter state machine in
``base.py`` is shared by all of them.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from trader_bias.aggregator.channel import Event
from trader_bias.aggregator.orderbook import truncate_levels
from trader_bias.errors import FrameParseError
from trader_bias.storage.models import (
    BUY,
    PERP,
    SELL,
    SPOT,
    BookSnapshot,
    MetricSample,
    TradeEvent,
)

# Frame classes returned by VenueProfile.classify
ACK = "ack"
REJECT = "reject"
DATA = "data"
CONTROL = "control"

TRADES = "trades"
BOOK = "book"
MARK = "mark"
TICKER = "ticker"

# OKX swap sizes are quoted in contracts
OKX_CONTRACT_SIZE = {"BTC": 0.01, "ETH": 0.1, "SOL": 1.0}

Parser = Callable[[dict[str, Any], dict[str, str], int], list[Event]]


@dataclass(frozen=True)
class VenueProfile:
    name: str
    exchange: str
    venue: str
    url: str
    streams: frozenset[str]
    native_symbol: Callable[[str], str]
    subscriptions: Callable[[list[str], list[str]], list[dict[str, Any]]]
    classify: Callable[[dict[str, Any]], str]
    parse: Parser
    ack_count: Callable[[list[dict[str, Any]]], int] = len
    ping_message: str | None = None
    pong_text: str | None = None
    ping_interval_s: float = 20.0


def _side(raw: str) -> str:
    side = raw.upper()
    if side not in (BUY, SELL):
        raise FrameParseError(f"Unknown trade side: {raw}")
    return side


def _levels(raw: list[list[Any]], descending: bool, multiplier: float = 1.0):
    levels = [(float(level[0]), float(level[1]) * multiplier) for level in raw]
    return truncate_levels(levels, descending=descending)


_FRACTION = re.compile(r"\.(\d{6})\d+")


def iso_to_ms(value: str) -> int:
    """Parse an ISO-8601 UTC timestamp (Z suffix, up to nanoseconds) to epoch ms."""
    text = _FRACTION.sub(r".\1", value.replace("Z", "+00:00"))
    return int(datetime.fromisoformat(text).timestamp() * 1000)


# ---------------------------------------------------------------- binance


def _binance_subscriptions(symbols: list[str], streams: list[str]) -> list[dict[str, Any]]:
    params = []
    for symbol in symbols:
        s = symbol.lower()
        if TRADES in streams:
            params.append(f"{s}@aggTrade")
        if BOOK in streams:
            params.append(f"{s}@depth20@100ms")
        if MARK in streams:
            params.append(f"{s}@markPrice@1s")
    return [{"method": "SUBSCRIBE", "params": params, "id": 1}]


def _binance_classify(frame: dict[str, Any]) -> str:
    if "error" in frame:
        return REJECT
    if "result" in frame and "id" in frame:
        return ACK
    if "data" in frame or "e" in frame:
        return DATA
    return CONTROL


def _binance_parser(exchange: str, venue: str) -> Parser:
    def parse(frame: dict[str, Any], coins: dict[str, str], received_ms: int) -> list[Event]:
        data = frame.get("data", frame)
        kind = data.get("e")
        symbol = data.get("s", "")
        coin = coins.get(symbol)
        if coin is None:
            return []

        if kind == "aggTrade":
            # m=True: buyer is the maker, so the taker sold
            return [
                TradeEvent(
                    exchange=exchange,
                    venue=venue,
                    symbol=symbol,
                    coin=coin,
                    price=float(data["p"]),
                    size=float(data["q"]),
                    side=SELL if data["m"] else BUY,
                    trade_id=str(data["a"]),
                    timestamp_ms=int(data["T"]),
                )
            ]
        if kind == "depthUpdate":
            return [
                BookSnapshot(
                    exchange=exchange,
                    venue=venue,
                    symbol=symbol,
                    coin=coin,
                    timestamp_ms=int(data.get("T") or data["E"]),
                    bids=_levels(data["b"], descending=True),
                    asks=_levels(data["a"], descending=False),
                )
            ]
        if kind == "markPriceUpdate":
            ts = int(data["E"])
            events: list[Event] = [
                MetricSample(exchange, venue, coin, "mark_price", float(data["p"]), ts)
            ]
            if data.get("r") not in (None, ""):
                events.append(MetricSample(exchange, venue, coin, "funding_rate", float(data["r"]), ts))
            return events
        return []

    return parse


# ---------------------------------------------------------------- bybit


def _bybit_subscriptions(symbols: list[str], streams: list[str]) -> list[dict[str, Any]]:
    args = []
    for symbol in symbols:
        if TRADES in streams:
            args.append(f"publicTrade.{symbol}")
        if TICKER in streams:
            args.append(f"tickers.{symbol}")
    # bybit accepts at most 10 topics per request
    return [{"op": "subscribe", "args": args[i : i + 10]} for i in range(0, len(args), 10)]


def _bybit_classify(frame: dict[str, Any]) -> str:
    op = frame.get("op")
    if op == "subscribe":
        return ACK if frame.get("success") else REJECT
    if "topic" in frame:
        return DATA
    return CONTROL


def _bybit_parser(venue: str) -> Parser:
    def parse(frame: dict[str, Any], coins: dict[str, str], received_ms: int) -> list[Event]:
        topic = frame["topic"]
        channel, _, symbol = topic.partition(".")
        coin = coins.get(symbol)
        if coin is None:
            return []

        if channel == "publicTrade":
            return [
                TradeEvent(
                    exchange="bybit",
                    venue=venue,
                    symbol=symbol,
                    coin=coin,
                    price=float(t["p"]),
                    size=float(t["v"]),
                    side=_side(t["S"]),
                    trade_id=str(t["i"]),
                    timestamp_ms=int(t["T"]),
                )
                for t in frame["data"]
            ]
        if channel == "tickers":
            # linear tickers arrive as a snapshot then partial deltas
            data = frame["data"]
            ts = int(frame.get("ts") or received_ms)
            events: list[Event] = []
            for key, kind in (
                ("markPrice", "mark_price"),
                ("openInterestValue", "open_interest"),
                ("fundingRate", "funding_rate"),
            ):
                if data.get(key) not in (None, ""):
                    events.append(MetricSample("bybit", venue, coin, kind, float(data[key]), ts))
            return events
        return []

    return parse


# ---------------------------------------------------------------- okx

OKX_CHANNELS = {
    TRADES: ["trades"],
    BOOK: ["books5"],
    MARK: ["mark-price", "funding-rate", "open-interest"],
}


def _okx_subscriptions(symbols: list[str], streams: list[str]) -> list[dict[str, Any]]:
    args = [
        {"channel": channel, "instId": symbol}
        for symbol in symbols
        for stream in streams
        for channel in OKX_CHANNELS.get(stream, [])
    ]
    return [{"op": "subscribe", "args": args}]


def _okx_ack_count(messages: list[dict[str, Any]]) -> int:
    # one ack per subscribed channel
    return sum(len(m["args"]) for m in messages)


def _okx_classify(frame: dict[str, Any]) -> str:
    event = frame.get("event")
    if event == "subscribe":
        return ACK
    if event == "error":
        return REJECT
    if "data" in frame and "arg" in frame:
        return DATA
    return CONTROL


def _okx_parser(venue: str) -> Parser:
    def parse(frame: dict[str, Any], coins: dict[str, str], received_ms: int) -> list[Event]:
        channel = frame["arg"]["channel"]
        symbol = frame["arg"]["instId"]
        coin = coins.get(symbol)
        if coin is None:
            return []
        multiplier = OKX_CONTRACT_SIZE.get(coin, 1.0) if venue == PERP else 1.0

        events: list[Event] = []
        for item in frame["data"]:
            ts = int(item.get("ts") or received_ms)
            if channel == "trades":
                events.append(
                    TradeEvent(
                        exchange="okx",
                        venue=venue,
                        symbol=symbol,
                        coin=coin,
                        price=float(item["px"]),
                        size=float(item["sz"]) * multiplier,
                        side=_side(item["side"]),
                        trade_id=str(item["tradeId"]),
                        timestamp_ms=ts,
                    )
                )
            elif channel == "books5":
                events.append(
                    BookSnapshot(
                        exchange="okx",
                        venue=venue,
                        symbol=symbol,
                        coin=coin,
                        timestamp_ms=ts,
                        bids=_levels(item["bids"], descending=True, multiplier=multiplier),
                        asks=_levels(item["asks"], descending=False, multiplier=multiplier),
                    )
                )
            elif channel == "mark-price":
                events.append(MetricSample("okx", venue, coin, "mark_price", float(item["markPx"]), ts))
            elif channel == "funding-rate":
                events.append(
                    MetricSample("okx", venue, coin, "funding_rate", float(item["fundingRate"]), ts)
                )
            elif channel == "open-interest":
                value = item.get("oiUsd") or item["oiCcy"]
                events.append(MetricSample("okx", venue, coin, "open_interest", float(value), ts))
        return events

    return parse


# ---------------------------------------------------------------- coinbase


def _coinbase_subscriptions(symbols: list[str], streams: list[str]) -> list[dict[str, Any]]:
    messages = []
    if TRADES in streams:
        messages.append({"type": "subscribe", "product_ids": symbols, "channel": "market_trades"})
    # heartbeats keep quiet products from tripping stall detection
    messages.append({"type": "subscribe", "product_ids": symbols, "channel": "heartbeats"})
    return messages


def _coinbase_classify(frame: dict[str, Any]) -> str:
    if frame.get("type") == "error":
        return REJECT
    channel = frame.get("channel")
    if channel == "subscriptions":
        return ACK
    if channel == "market_trades":
        return DATA
    return CONTROL


def _coinbase_parse(frame: dict[str, Any], coins: dict[str, str], received_ms: int) -> list[Event]:
    events: list[Event] = []
    for event in frame.get("events", []):
        for t in event.get("trades", []):
            coin = coins.get(t["product_id"])
            if coin is None:
                continue
            events.append(
                TradeEvent(
                    exchange="coinbase",
                    venue=SPOT,
                    symbol=t["product_id"],
                    coin=coin,
                    price=float(t["price"]),
                    size=float(t["size"]),
                    side=_side(t["side"]),
                    trade_id=str(t["trade_id"]),
                    timestamp_ms=iso_to_ms(t["time"]),
                )
            )
    return events


# ---------------------------------------------------------------- registry

PROFILES: dict[str, VenueProfile] = {
    "binance": VenueProfile(
        name="binance",
        exchange="binance",
        venue=PERP,
        url="wss://fstream.binance.com/stream",
        streams=frozenset({TRADES, BOOK, MARK}),
        native_symbol=lambda coin: f"{coin}USDT",
        subscriptions=_binance_subscriptions,
        classify=_binance_classify,
        parse=_binance_parser("binance", PERP),
    ),
    "binance_spot": VenueProfile(
        name="binance_spot",
        exchange="binance",
        venue=SPOT,
        url="wss://stream.binance.com:9443/stream",
        streams=frozenset({TRADES}),
        native_symbol=lambda coin: f"{coin}USDT",
        subscriptions=_binance_subscriptions,
        classify=_binance_classify,
        parse=_binance_parser("binance", SPOT),
    ),
    "bybit": VenueProfile(
        name="bybit",
        exchange="bybit",
        venue=PERP,
        url="wss://stream.bybit.com/v5/public/linear",
        streams=frozenset({TRADES, TICKER}),
        native_symbol=lambda coin: f"{coin}USDT",
        subscriptions=_bybit_subscriptions,
        classify=_bybit_classify,
        parse=_bybit_parser(PERP),
        ping_message='{"op":"ping"}',
    ),
    "bybit_spot": VenueProfile(
        name="bybit_spot",
        exchange="bybit",
        venue=SPOT,
        url="wss://stream.bybit.com/v5/public/spot",
        streams=frozenset({TRADES}),
        native_symbol=lambda coin: f"{coin}USDT",
        subscriptions=_bybit_subscriptions,
        classify=_bybit_classify,
        parse=_bybit_parser(SPOT),
        ping_message='{"op":"ping"}',
    ),
    "okx": VenueProfile(
        name="okx",
        exchange="okx",
        venue=PERP,
        url="wss://ws.okx.com:8443/ws/v5/public",
        streams=frozenset({TRADES, BOOK, MARK}),
        native_symbol=lambda coin: f"{coin}-USDT-SWAP",
        subscriptions=_okx_subscriptions,
        classify=_okx_classify,
        parse=_okx_parser(PERP),
        ack_count=_okx_ack_count,
        ping_message="ping",
        pong_text="pong",
    ),
    "coinbase": VenueProfile(
        name="coinbase",
        exchange="coinbase",
        venue=SPOT,
        url="wss://advanced-trade-ws.coinbase.com",
        streams=frozenset({TRADES}),
        native_symbol=lambda coin: f"{coin}-USD",
        subscriptions=_coinbase_subscriptions,
        classify=_coinbase_classify,
        parse=_coinbase_parse,
    ),
}


def get_profile(name: str) -> VenueProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown venue profile: {name}") from None
