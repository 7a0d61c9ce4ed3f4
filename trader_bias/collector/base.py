# trader_bias/collector/base.py
import asyncio
import json
import logging
import random
import time
from collections import OrderedDict, deque
from collections.abc import Callable
from enum import Enum
from typing import Any

import websockets

from trader_bias.aggregator.channel import Event
from trader_bias.collector.venues import ACK, CONTROL, DATA, REJECT, VenueProfile
from trader_bias.config import Config, ExchangeConfig
from trader_bias.errors import AdapterError, FrameParseError, SubscriptionRejected
from trader_bias.metrics import Counters
from trader_bias.storage.models import TradeEvent

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10
READ_TIMEOUT_S = 30
ACK_WINDOW_S = 10
STOP_GRACE_S = 5
DEDUP_SIZE = 256
PARSE_ERROR_LIMIT = 10
PARSE_ERROR_WINDOW_S = 60


class AdapterState(Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    SUBSCRIBED = "SUBSCRIBED"
    DEGRADED = "DEGRADED"
    CLOSED = "CLOSED"
    RECONNECTING = "RECONNECTING"


def backoff_delay(
    attempt: int, base_ms: int, cap_ms: int, rng: Callable[[], float] = random.random
) -> float:
    """Seconds before reconnect attempt ``attempt``: min(cap, base*2^n) * U(0.5, 1.5)."""
    raw_ms = min(cap_ms, base_ms * 2 ** min(attempt, 32))
    return raw_ms * (0.5 + rng()) / 1000


class TradeIdCache:
    """Last ``size`` trade ids per (venue, symbol)."""

    def __init__(self, size: int = DEDUP_SIZE):
        self.size = size
        self._ids: dict[tuple[str, str], OrderedDict[str, None]] = {}

    def seen(self, venue: str, symbol: str, trade_id: str) -> bool:
        ids = self._ids.setdefault((venue, symbol), OrderedDict())
        if trade_id in ids:
            ids.move_to_end(trade_id)
            return True
        ids[trade_id] = None
        if len(ids) > self.size:
            ids.popitem(last=False)
        return False


class StreamAdapter:
    """One websocket connection to one venue, driven through AdapterState.

    Canonical events are pushed to ``sink``; the adapter never blocks on it.
    """

    def __init__(
        self,
        profile: VenueProfile,
        exchange_config: ExchangeConfig,
        sink: Callable[[Event], None],
        config: Config,
        counters: Counters | None = None,
        connect: Callable[..., Any] = websockets.connect,
        rng: Callable[[], float] = random.random,
    ):
        self.profile = profile
        self.name = profile.name
        self.url = exchange_config.endpoint or profile.url
        self.coins = {profile.native_symbol(c): c for c in exchange_config.symbols}
        self.symbols = list(self.coins)
        self.streams = [s for s in exchange_config.streams if s in profile.streams]
        unsupported = set(exchange_config.streams) - profile.streams
        if unsupported:
            logger.warning(f"{self.name} does not support streams {sorted(unsupported)}")

        self.sink = sink
        self.counters = counters or Counters()
        self.stall_s = config.stall_ms / 1000
        self.read_timeout_s = max(READ_TIMEOUT_S, self.stall_s)
        self.reconnect = config.reconnect

        self.state = AdapterState.IDLE
        self.last_event_ms: int | None = None
        self.error: AdapterError | None = None
        self.attempt = 0
        self.running = False

        self._connect = connect
        self._rng = rng
        self._dedup = TradeIdCache()
        self._parse_errors: deque[float] = deque()
        self._ws: Any = None
        self._task: asyncio.Task[None] | None = None

    def _set_state(self, state: AdapterState) -> None:
        if state != self.state:
            logger.debug(f"{self.name}: {self.state.value} -> {state.value}")
            self.state = state

    def last_event_ago_ms(self, now_ms: int | None = None) -> int | None:
        if self.last_event_ms is None:
            return None
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return max(0, now_ms - self.last_event_ms)

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self.running = True
        self.error = None
        self._task = asyncio.create_task(self._run())
        logger.info(f"{self.name} adapter started for {', '.join(self.symbols)}")

    async def stop(self) -> None:
        self.running = False
        ws = self._ws
        if ws is not None:
            try:
                await asyncio.wait_for(ws.close(), timeout=STOP_GRACE_S)
            except Exception as e:
                logger.warning(f"{self.name} did not close cleanly: {e}")
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(AdapterState.CLOSED)
        logger.info(f"{self.name} adapter stopped")

    async def _run(self) -> None:
        while self.running:
            subscribed_at: float | None = None
            try:
                self._set_state(AdapterState.CONNECTING)
                self._ws = await self._connect(self.url, open_timeout=CONNECT_TIMEOUT_S)
                self._set_state(AdapterState.OPEN)
                await self._subscribe(self._ws)
                self._set_state(AdapterState.SUBSCRIBED)
                subscribed_at = time.monotonic()
                logger.info(f"{self.name} subscribed to {', '.join(self.streams)}")
                await self._read_loop(self._ws)
            except asyncio.CancelledError:
                raise
            except SubscriptionRejected as e:
                self.error = e
                self.running = False
                self.counters.inc("subscriptions_rejected")
                logger.error(f"{self.name} subscription rejected: {e.message}")
            except Exception as e:
                self.counters.inc("adapter_errors")
                logger.warning(f"{self.name} connection lost: {e}")
            finally:
                await self._close_socket()

            if not self.running:
                break
            if subscribed_at is not None:
                if (time.monotonic() - subscribed_at) * 1000 >= self.reconnect.reset_after_ms:
                    self.attempt = 0
            delay = backoff_delay(
                self.attempt, self.reconnect.base_ms, self.reconnect.cap_ms, self._rng
            )
            self.attempt += 1
            self.counters.inc("reconnects")
            self._set_state(AdapterState.RECONNECTING)
            logger.info(f"{self.name} reconnecting in {delay:.1f}s (attempt {self.attempt})")
            await asyncio.sleep(delay)

        self._set_state(AdapterState.CLOSED)

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"{self.name} close error: {e}")

    async def _subscribe(self, ws: Any) -> None:
        messages = self.profile.subscriptions(self.symbols, self.streams)
        for message in messages:
            await ws.send(json.dumps(message))

        expected = self.profile.ack_count(messages)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + ACK_WINDOW_S
        acked = 0
        while acked < expected:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError
                raw = await asyncio.wait_for(ws.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                raise AdapterError(
                    self.name, f"{acked}/{expected} subscription acks within {ACK_WINDOW_S}s"
                ) from None
            # data may interleave with acks
            if self._handle_frame(raw) == ACK:
                acked += 1

    async def _read_loop(self, ws: Any) -> None:
        loop = asyncio.get_running_loop()
        last_message = loop.time()
        ping = self.profile.ping_message
        next_ping = loop.time() + self.profile.ping_interval_s if ping else None

        while self.running:
            now = loop.time()
            deadlines = [last_message + self.read_timeout_s]
            if self.state == AdapterState.SUBSCRIBED:
                deadlines.append(last_message + self.stall_s)
            if next_ping is not None:
                deadlines.append(next_ping)

            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=max(0.0, min(deadlines) - now))
            except asyncio.TimeoutError:
                now = loop.time()
                if next_ping is not None and now >= next_ping:
                    await ws.send(ping)
                    next_ping = now + self.profile.ping_interval_s
                if now - last_message >= self.read_timeout_s:
                    raise AdapterError(self.name, f"no message for {self.read_timeout_s:.0f}s")
                if self.state == AdapterState.SUBSCRIBED and now - last_message >= self.stall_s:
                    self.counters.inc("adapter_stalls")
                    logger.warning(f"{self.name} stalled, no message for {self.stall_s:.0f}s")
                    self._set_state(AdapterState.DEGRADED)
                continue

            last_message = loop.time()
            if self.state == AdapterState.DEGRADED:
                logger.info(f"{self.name} recovered from stall")
                self._set_state(AdapterState.SUBSCRIBED)
            self._handle_frame(raw)

    def _handle_frame(self, raw: str | bytes) -> str:
        """Decode, classify and dispatch one frame. Returns its frame class."""
        if self.profile.pong_text is not None and raw == self.profile.pong_text:
            return CONTROL
        try:
            frame = json.loads(raw)
            if not isinstance(frame, dict):
                raise FrameParseError(f"unexpected frame: {str(raw)[:100]}")
            kind = self.profile.classify(frame)
            if kind == REJECT:
                raise SubscriptionRejected(self.name, json.dumps(frame)[:300])
            if kind == DATA:
                events = self.profile.parse(frame, self.coins, int(time.time() * 1000))
                for event in events:
                    self._emit(event)
            return kind
        except (FrameParseError, ValueError, KeyError, TypeError, IndexError) as e:
            self._on_parse_error(e)
            return CONTROL

    def _on_parse_error(self, error: Exception) -> None:
        self.counters.inc("parse_errors")
        now = time.monotonic()
        self._parse_errors.append(now)
        while self._parse_errors and now - self._parse_errors[0] > PARSE_ERROR_WINDOW_S:
            self._parse_errors.popleft()
        logger.warning(f"{self.name} dropped frame: {error!r}")
        if len(self._parse_errors) >= PARSE_ERROR_LIMIT:
            self._parse_errors.clear()
            raise AdapterError(
                self.name, f"{PARSE_ERROR_LIMIT} parse errors within {PARSE_ERROR_WINDOW_S}s"
            )

    def _emit(self, event: Event) -> None:
        if isinstance(event, TradeEvent):
            if not event.is_valid:
                self.counters.inc("trades_invalid")
                logger.debug(f"{self.name} dropped trade {event.trade_id} with size {event.size}")
                return
            if self._dedup.seen(event.venue, event.symbol, event.trade_id):
                self.counters.inc("trades_duplicate")
                return
        self.last_event_ms = int(time.time() * 1000)
        self.sink(event)
