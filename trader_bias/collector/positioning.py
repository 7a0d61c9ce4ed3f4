# trader_bias/collector/positioning.py
import asyncio
import logging
from collections.abc import Callable

from trader_bias.client.binance import BinanceClient
from trader_bias.config import Config
from trader_bias.metrics import Counters
from trader_bias.storage.models import PositioningSample

logger = logging.getLogger(__name__)


class PositioningPoller:
    """Polls Binance retail vs top-trader long/short ratios per coin."""

    def __init__(
        self,
        config: Config,
        sink: Callable[[PositioningSample], None],
        counters: Counters | None = None,
        client: BinanceClient | None = None,
    ):
        self.coins = config.coins
        self.interval = config.polling.long_short_seconds
        self.sink = sink
        self.counters = counters or Counters()
        self.client = client or BinanceClient()
        self.running = False
        self._task: asyncio.Task[None] | None = None

    async def fetch(self, coin: str) -> PositioningSample | None:
        symbol = f"{coin}USDT"
        retail = await self.client.get_global_long_short_ratio(symbol)
        top = await self.client.get_top_long_short_position_ratio(symbol)
        if not retail or not top:
            logger.warning(f"Empty long/short ratio response for {symbol}")
            return None
        return PositioningSample(
            coin=coin,
            top_ratio=top[-1].long_short_ratio,
            global_ratio=retail[-1].long_short_ratio,
            timestamp_ms=max(top[-1].timestamp, retail[-1].timestamp),
        )

    async def poll_once(self) -> list[PositioningSample]:
        samples = []
        for coin in self.coins:
            try:
                sample = await self.fetch(coin)
            except Exception as e:
                # the last good sample stays in the aggregator until it goes stale
                self.counters.inc("poll_errors")
                logger.error(f"Long/short poll failed for {coin}: {e}")
                continue
            if sample is not None:
                self.sink(sample)
                samples.append(sample)
        return samples

    async def start(self) -> None:
        await self.client.__aenter__()
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"PositioningPoller started for {', '.join(self.coins)}")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self.client.__aexit__(None, None, None)
        logger.info("PositioningPoller stopped")

    async def _run(self) -> None:
        while self.running:
            await self.poll_once()
            await asyncio.sleep(self.interval)
