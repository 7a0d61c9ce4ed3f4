# trader_bias/collector/market_poller.py
import asyncio
import logging
from collections.abc import Callable
from typing import Any

import ccxt.async_support as ccxt

from trader_bias.config import Config
from trader_bias.metrics import Counters
from trader_bias.storage.models import PERP, MetricSample

logger = logging.getLogger(__name__)

CCXT_CLASSES = {
    "binance": "binanceusdm",
    "bybit": "bybit",
    "okx": "okx",
}


def ccxt_symbol(coin: str) -> str:
    return f"{coin}/USDT:USDT"


class MarketPoller:
    """REST fallback for open interest, funding and mark price on perp venues."""

    def __init__(
        self,
        config: Config,
        sink: Callable[[MetricSample], None],
        counters: Counters | None = None,
    ):
        self.targets = config.polling.market_exchanges
        self.coins = config.coins
        self.interval = config.polling.market_seconds
        self.sink = sink
        self.counters = counters or Counters()
        self.exchanges: dict[str, Any] = {}
        self.running = False
        self._task: asyncio.Task[None] | None = None

    async def init(self) -> None:
        for name in self.targets:
            if name not in CCXT_CLASSES:
                logger.warning(f"No REST market source for {name}")
                continue
            self.exchanges[name] = getattr(ccxt, CCXT_CLASSES[name])()

    async def close(self) -> None:
        for ex in self.exchanges.values():
            await ex.close()
        self.exchanges = {}

    async def _fetch_open_interest(self, name: str, coin: str) -> list[MetricSample]:
        ex = self.exchanges[name]
        symbol = ccxt_symbol(coin)
        data: dict[str, Any] = await ex.fetch_open_interest(symbol)

        oi_amount = data.get("openInterestAmount")
        oi_value = data.get("openInterestValue")
        timestamp = data.get("timestamp")
        if timestamp is None or (oi_amount is None and oi_value is None):
            logger.warning(f"Incomplete OI data from {name} for {symbol}: {data}")
            return []

        # Binance reports contracts only
        if oi_value is None:
            ticker: dict[str, Any] = await ex.fetch_ticker(symbol)
            price = ticker.get("last")
            if price is None:
                logger.warning(f"Cannot get price to value OI for {symbol} on {name}")
                return []
            oi_value = oi_amount * price

        return [MetricSample(name, PERP, coin, "open_interest", float(oi_value), int(timestamp))]

    async def _fetch_funding(self, name: str, coin: str, kinds: list[str]) -> list[MetricSample]:
        data: dict[str, Any] = await self.exchanges[name].fetch_funding_rate(ccxt_symbol(coin))
        timestamp = data.get("timestamp")
        if timestamp is None:
            return []

        samples = []
        if "funding_rate" in kinds and data.get("fundingRate") is not None:
            samples.append(
                MetricSample(name, PERP, coin, "funding_rate", float(data["fundingRate"]), timestamp)
            )
        if "mark_price" in kinds and data.get("markPrice") is not None:
            samples.append(
                MetricSample(name, PERP, coin, "mark_price", float(data["markPrice"]), timestamp)
            )
        return samples

    async def poll_once(self) -> list[MetricSample]:
        tasks = []
        for name, ex_kinds in self.targets.items():
            if name not in self.exchanges:
                continue
            for coin in self.coins:
                if "open_interest" in ex_kinds:
                    tasks.append(self._fetch_open_interest(name, coin))
                if "funding_rate" in ex_kinds or "mark_price" in ex_kinds:
                    tasks.append(self._fetch_funding(name, coin, ex_kinds))

        samples: list[MetricSample] = []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                self.counters.inc("poll_errors")
                logger.error(f"Market poll failed: {result}")
                continue
            samples.extend(result)

        for sample in samples:
            self.sink(sample)
        return samples

    async def start(self) -> None:
        await self.init()
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"MarketPoller started for {', '.join(self.exchanges)}")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.close()
        logger.info("MarketPoller stopped")

    async def _run(self) -> None:
        while self.running:
            await self.poll_once()
            await asyncio.sleep(self.interval)
