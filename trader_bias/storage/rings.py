# trader_bias/storage/rings.py
"""Time-bucketed rolling rings keyed by (exchange, venue, coin, metric).

Buckets are left-closed/right-open intervals aligned to floor(t / B) * B. A ring
holds at most H / B buckets; advancing the head evicts everything older than H.
All timestamps are exchange (adapter) milliseconds, never wall clock.
"""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from trader_bias.config import RetentionConfig

logger = logging.getLogger(__name__)

SUM = "sum"
LAST = "last"

DEFAULT_TOLERANCE_MS = 2000

BUY_VOLUME = "buy_volume"
SELL_VOLUME = "sell_volume"
CVD = "cvd"
TRADE_COUNT = "trade_count"
WHALE_FLOW = "whale_flow"
WHALE_GROSS = "whale_gross"
IMBALANCE = "imbalance"
OPEN_INTEREST = "open_interest"
FUNDING_RATE = "funding_rate"
MARK_PRICE = "mark_price"

RingKey = tuple[str, str, str, str]


@dataclass(frozen=True)
class MetricSpec:
    bucket_ms: int
    horizon_ms: int
    aggregate: str


def metric_specs(retention: RetentionConfig | None = None) -> dict[str, MetricSpec]:
    r = retention or RetentionConfig()
    trade_h = r.trade_volume * 1000
    return {
        BUY_VOLUME: MetricSpec(1000, trade_h, SUM),
        SELL_VOLUME: MetricSpec(1000, trade_h, SUM),
        TRADE_COUNT: MetricSpec(1000, trade_h, SUM),
        WHALE_FLOW: MetricSpec(1000, trade_h, SUM),
        WHALE_GROSS: MetricSpec(1000, trade_h, SUM),
        CVD: MetricSpec(1000, r.cvd * 1000, SUM),
        IMBALANCE: MetricSpec(1000, r.imbalance * 1000, LAST),
        OPEN_INTEREST: MetricSpec(10_000, r.open_interest * 1000, LAST),
        FUNDING_RATE: MetricSpec(60_000, r.funding_rate * 1000, LAST),
        MARK_PRICE: MetricSpec(1000, r.mark_price * 1000, LAST),
    }


class RollingRing:
    def __init__(
        self,
        bucket_ms: int,
        horizon_ms: int,
        aggregate: str = SUM,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
    ):
        if bucket_ms <= 0 or horizon_ms < bucket_ms:
            raise ValueError("bucket_ms must be positive and not exceed horizon_ms")
        if aggregate not in (SUM, LAST):
            raise ValueError(f"Unknown aggregate: {aggregate}")
        self.bucket_ms = bucket_ms
        self.horizon_ms = horizon_ms
        self.aggregate = aggregate
        self.tolerance_ms = tolerance_ms
        self.capacity = horizon_ms // bucket_ms
        self.late_writes = 0
        self.expired_writes = 0
        self._starts: list[int | None] = [None] * self.capacity
        self._values: list[float] = [0.0] * self.capacity
        self._head: int | None = None
        self._latest_ts: int | None = None
        self._lock = threading.Lock()

    def bucket_start(self, timestamp_ms: int) -> int:
        return (timestamp_ms // self.bucket_ms) * self.bucket_ms

    def _slot(self, start: int) -> int:
        return (start // self.bucket_ms) % self.capacity

    @property
    def head(self) -> int | None:
        return self._head

    @property
    def latest_timestamp(self) -> int | None:
        return self._latest_ts

    @property
    def anomalies(self) -> int:
        return self.late_writes + self.expired_writes

    def add(self, timestamp_ms: int, value: float) -> bool:
        """Fold a value into its bucket. Returns False when the write is dropped."""
        with self._lock:
            if self._latest_ts is not None and timestamp_ms < self._latest_ts - self.tolerance_ms:
                self.late_writes += 1
                return False

            start = self.bucket_start(timestamp_ms)
            if self._head is not None and start <= self._head - self.horizon_ms:
                self.expired_writes += 1
                return False

            if self._head is None or start > self._head:
                self._advance(start)

            slot = self._slot(start)
            if self._starts[slot] != start:
                self._starts[slot] = start
                self._values[slot] = 0.0
            if self.aggregate == SUM:
                self._values[slot] += value
            else:
                self._values[slot] = value

            if self._latest_ts is None or timestamp_ms > self._latest_ts:
                self._latest_ts = timestamp_ms
            return True

    def _advance(self, new_head: int) -> None:
        # Slots between the old and new head are reused by the new buckets; clearing
        # them drops every bucket that just fell out of the horizon.
        if self._head is not None:
            steps = min(self.capacity, (new_head - self._head) // self.bucket_ms)
            for i in range(1, steps + 1):
                slot = self._slot(self._head + i * self.bucket_ms)
                self._starts[slot] = None
                self._values[slot] = 0.0
        self._head = new_head

    def _window(self, window_ms: int, now_ms: int) -> list[tuple[int, float]]:
        n = min(self.capacity, max(0, window_ms // self.bucket_ms))
        current = self.bucket_start(now_ms)
        out: list[tuple[int, float]] = []
        with self._lock:
            for i in range(n - 1, -1, -1):
                start = current - i * self.bucket_ms
                slot = self._slot(start)
                if self._starts[slot] == start:
                    out.append((start, self._values[slot]))
        return out

    def series(self, window_ms: int, now_ms: int) -> list[tuple[int, float]]:
        """Present buckets in the last window, oldest first."""
        return self._window(window_ms, now_ms)

    def sum_over_last(self, window_ms: int, now_ms: int) -> float:
        return sum(v for _, v in self._window(window_ms, now_ms))

    def mean_over_last(self, window_ms: int, now_ms: int) -> float | None:
        values = [v for _, v in self._window(window_ms, now_ms)]
        if not values:
            return None
        return sum(values) / len(values)

    def count_over_last(self, window_ms: int, now_ms: int) -> int:
        return len(self._window(window_ms, now_ms))

    def first_over_last(self, window_ms: int, now_ms: int) -> float | None:
        window = self._window(window_ms, now_ms)
        return window[0][1] if window else None

    def value_at(self, timestamp_ms: int, tolerance_ms: int = 0) -> float | None:
        """Value of the bucket containing timestamp_ms, else the nearest within tolerance."""
        start = self.bucket_start(timestamp_ms)
        steps = tolerance_ms // self.bucket_ms
        center = self.bucket_ms / 2
        neighbours = [start + k * self.bucket_ms for k in range(-steps, steps + 1) if k != 0]
        neighbours.sort(key=lambda s: abs(s + center - timestamp_ms))
        with self._lock:
            for s in [start] + neighbours:
                slot = self._slot(s)
                if self._starts[slot] == s:
                    return self._values[slot]
        return None

    def latest(self) -> tuple[int, float] | None:
        with self._lock:
            if self._head is None:
                return None
            slot = self._slot(self._head)
            if self._starts[slot] != self._head:
                return None
            return self._head, self._values[slot]

    def buckets(self) -> list[tuple[int, float]]:
        with self._lock:
            pairs = [(s, v) for s, v in zip(self._starts, self._values) if s is not None]
        return sorted(pairs)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for s in self._starts if s is not None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket_ms": self.bucket_ms,
            "horizon_ms": self.horizon_ms,
            "aggregate": self.aggregate,
            "latest_ts": self._latest_ts,
            "buckets": self.buckets(),
        }

    def restore(self, buckets: list[list[float]], latest_ts: int | None, now_ms: int) -> int:
        """Load persisted buckets still inside the horizon. Returns the number kept."""
        kept = 0
        with self._lock:
            for start, value in sorted(buckets):
                start = int(start)
                if start <= now_ms - self.horizon_ms or start % self.bucket_ms:
                    continue
                if self._head is None or start > self._head:
                    self._advance(start)
                slot = self._slot(start)
                self._starts[slot] = start
                self._values[slot] = float(value)
                kept += 1
            if latest_ts is not None and kept:
                self._latest_ts = max(self._latest_ts or 0, int(latest_ts))
        return kept


class RingStore:
    def __init__(
        self,
        retention: RetentionConfig | None = None,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
    ):
        self.specs = metric_specs(retention)
        self.tolerance_ms = tolerance_ms
        self._rings: dict[RingKey, RollingRing] = {}
        self._lock = threading.Lock()

    def ring(self, exchange: str, venue: str, coin: str, metric: str) -> RollingRing:
        key = (exchange, venue, coin, metric)
        ring = self._rings.get(key)
        if ring is not None:
            return ring
        if metric not in self.specs:
            raise KeyError(f"Unknown metric: {metric}")
        with self._lock:
            ring = self._rings.get(key)
            if ring is None:
                spec = self.specs[metric]
                ring = RollingRing(
                    spec.bucket_ms, spec.horizon_ms, spec.aggregate, self.tolerance_ms
                )
                self._rings[key] = ring
        return ring

    def get(self, exchange: str, venue: str, coin: str, metric: str) -> RollingRing | None:
        return self._rings.get((exchange, venue, coin, metric))

    def add(
        self, exchange: str, venue: str, coin: str, metric: str, timestamp_ms: int, value: float
    ) -> bool:
        return self.ring(exchange, venue, coin, metric).add(timestamp_ms, value)

    def find(
        self,
        coin: str,
        metric: str,
        exchange: str | None = None,
        venue: str | None = None,
    ) -> list[tuple[RingKey, RollingRing]]:
        with self._lock:
            items = list(self._rings.items())
        return [
            (key, ring)
            for key, ring in items
            if key[2] == coin
            and key[3] == metric
            and (exchange is None or key[0] == exchange)
            and (venue is None or key[1] == venue)
        ]

    def keys(self) -> list[RingKey]:
        with self._lock:
            return list(self._rings.keys())

    def _rings_snapshot(self) -> list[RollingRing]:
        with self._lock:
            return list(self._rings.values())

    @property
    def late_writes(self) -> int:
        """Writes behind a ring's newest timestamp by more than the tolerance."""
        return sum(r.late_writes for r in self._rings_snapshot())

    @property
    def expired_writes(self) -> int:
        """Writes for buckets already outside a ring's horizon."""
        return sum(r.expired_writes for r in self._rings_snapshot())

    @property
    def anomalies(self) -> int:
        return self.late_writes + self.expired_writes

    def dump(self, path: Path) -> int:
        with self._lock:
            items = list(self._rings.items())
        payload = {"|".join(key): ring.to_dict() for key, ring in items}
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload))
        tmp.replace(path)
        return len(payload)

    def load(self, path: Path, now_ms: int) -> int:
        if not path.exists():
            logger.info("No ring snapshot found, starting fresh")
            return 0
        try:
            payload = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read ring snapshot {path}: {e}")
            return 0

        restored = 0
        for name, data in payload.items():
            parts = name.split("|")
            if len(parts) != 4 or parts[3] not in self.specs:
                continue
            ring = self.ring(*parts)
            restored += ring.restore(data.get("buckets", []), data.get("latest_ts"), now_ms)
        logger.info(f"Restored {restored} ring buckets from {path}")
        return restored
