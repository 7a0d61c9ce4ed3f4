# trader_bias/aggregator/channel.py
import asyncio
from collections import OrderedDict, deque

from trader_bias.metrics import Counters
from trader_bias.storage.models import BookSnapshot, MetricSample, PositioningSample, TradeEvent

Event = TradeEvent | BookSnapshot | MetricSample | PositioningSample


class EventChannel:
    """Bounded adapter -> aggregator channel.

    Trades are queued FIFO up to ``capacity``; on overflow the oldest trade is
    dropped. Book snapshots and metric samples are coalesced per key (latest
    wins) and never dropped for overflow.
    """

    def __init__(self, capacity: int = 4096, counters: Counters | None = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.counters = counters or Counters()
        self._trades: deque[TradeEvent] = deque()
        self._latest: OrderedDict[tuple, Event] = OrderedDict()
        self._ready = asyncio.Event()

    def __len__(self) -> int:
        return len(self._trades) + len(self._latest)

    def put(self, event: Event) -> None:
        if isinstance(event, TradeEvent):
            if len(self._trades) >= self.capacity:
                self._trades.popleft()
                self.counters.inc("events_dropped")
            self._trades.append(event)
        else:
            key = self._coalesce_key(event)
            if key in self._latest:
                self.counters.inc("events_coalesced")
            self._latest[key] = event
        self._ready.set()

    @staticmethod
    def _coalesce_key(event: Event) -> tuple:
        if isinstance(event, BookSnapshot):
            return ("book", event.exchange, event.venue, event.symbol)
        if isinstance(event, MetricSample):
            return ("metric", event.exchange, event.venue, event.coin, event.kind)
        return ("positioning", event.coin)

    def get_nowait(self) -> Event | None:
        if self._latest:
            _, event = self._latest.popitem(last=False)
        elif self._trades:
            event = self._trades.popleft()
        else:
            return None
        if not self._trades and not self._latest:
            self._ready.clear()
        return event

    async def get(self) -> Event:
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            await self._ready.wait()
