# trader_bias/collector/vwap.py
"""Calendar-anchored VWAP levels from Binance futures klines.

Each period is anchored to its UTC start (day, Monday, month, quarter, year) and
computed as sum(typical_price * volume) / sum(volume) over the klines since then.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from trader_bias.client.binance import BinanceClient
from trader_bias.client.models import Kline
from trader_bias.config import Config
from trader_bias.metrics import Counters
from trader_bias.prediction.scheduler import wall_clock_ms

logger = logging.getLogger(__name__)

# period -> kline interval; chosen so a full period fits in one 1500-kline request
VWAP_PERIODS = {
    "daily": "1m",
    "weekly": "15m",
    "monthly": "1h",
    "quarterly": "4h",
    "yearly": "1d",
}


def period_start(period: str, now_ms: int) -> int:
    now = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        start = day
    elif period == "weekly":
        start = day - timedelta(days=day.weekday())
    elif period == "monthly":
        start = day.replace(day=1)
    elif period == "quarterly":
        start = day.replace(month=(day.month - 1) // 3 * 3 + 1, day=1)
    elif period == "yearly":
        start = day.replace(month=1, day=1)
    else:
        raise ValueError(f"Unknown VWAP period: {period}")
    return int(start.timestamp() * 1000)


def calculate_vwap(klines: list[Kline]) -> float | None:
    volume = sum(k.volume for k in klines)
    if volume <= 0:
        return None
    return sum(k.typical_price * k.volume for k in klines) / volume


@dataclass
class VwapLevel:
    period: str
    price: float | None
    start_time: int
    calculated_at: int
    kline_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "price": self.price,
            "startTime": self.start_time,
            "calculatedAt": self.calculated_at,
            "klineCount": self.kline_count,
            "error": self.error,
        }


class VwapPoller:
    """Refreshes VWAP levels for every coin on a fixed interval."""

    def __init__(
        self,
        config: Config,
        counters: Counters | None = None,
        client: BinanceClient | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.coins = config.coins
        self.interval = config.polling.vwap_seconds
        self.counters = counters or Counters()
        self.client = client or BinanceClient()
        self.clock = clock
        self.levels: dict[str, dict[str, VwapLevel]] = {}
        self.running = False
        self._task: asyncio.Task[None] | None = None

    async def fetch_level(self, coin: str, period: str, now_ms: int) -> VwapLevel:
        start = period_start(period, now_ms)
        try:
            klines = await self.client.get_klines(f"{coin}USDT", VWAP_PERIODS[period], start, now_ms)
        except Exception as e:
            self.counters.inc("poll_errors")
            logger.error(f"{coin} {period} VWAP fetch failed: {e}")
            return VwapLevel(period, None, start, now_ms, error=str(e))
        vwap = calculate_vwap(klines)
        return VwapLevel(
            period=period,
            price=round(vwap, 2) if vwap is not None else None,
            start_time=start,
            calculated_at=now_ms,
            kline_count=len(klines),
        )

    async def poll_once(self) -> None:
        for coin in self.coins:
            now = self.clock()
            levels = {}
            for period in VWAP_PERIODS:
                levels[period] = await self.fetch_level(coin, period, now)
            self.levels[coin] = levels
            logger.debug(
                f"{coin} VWAP "
                + " ".join(f"{p[0].upper()}={lvl.price}" for p, lvl in levels.items())
            )

    def get(self, coin: str) -> dict[str, Any] | None:
        levels = self.levels.get(coin)
        if not levels or all(lvl.price is None for lvl in levels.values()):
            return None
        return {"coin": coin, "levels": {p: lvl.to_dict() for p, lvl in levels.items()}}

    async def start(self) -> None:
        await self.client.__aenter__()
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"VwapPoller started for {', '.join(self.coins)}")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.client.__aexit__(None, None, None)
        logger.info("VwapPoller stopped")

    async def _run(self) -> None:
        while self.running:
            await self.poll_once()
            await asyncio.sleep(self.interval)
