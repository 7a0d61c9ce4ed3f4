# trader_bias/main.py
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

from aiohttp import web

from trader_bias.aggregator.engine import Aggregator
from trader_bias.api.server import ApiContext, start_server
from trader_bias.bias.engine import BiasEngine
from trader_bias.collector.base import StreamAdapter
from trader_bias.collector.market_poller import MarketPoller
from trader_bias.collector.positioning import PositioningPoller
from trader_bias.collector.venues import get_profile
from trader_bias.collector.vwap import VwapPoller
from trader_bias.config import Config, load_config
from trader_bias.metrics import Counters
from trader_bias.prediction.evaluator import Evaluator
from trader_bias.prediction.scheduler import ProjectionScheduler
from trader_bias.prediction.stats import BacktestService
from trader_bias.storage.database import PredictionStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
RINGS_FILE = "rings.json"
PREDICTIONS_FILE = "predictions.db"
STORE_PROBE_INTERVAL_S = 10


class TraderBiasService:
    def __init__(self, config: Config):
        self.config = config
        self.data_dir = Path(config.data_dir)
        self.counters = Counters()
        self.aggregator = Aggregator(config, counters=self.counters)
        self.engine = BiasEngine(self.aggregator, config)
        self.store = PredictionStore(
            str(self.data_dir / PREDICTIONS_FILE), config.persistence, self.counters
        )
        self.backtest = BacktestService(self.store, config)
        self.scheduler = ProjectionScheduler(self.engine, self.store, config, self.counters)
        self.evaluator = Evaluator(self.store, self.aggregator, config.evaluation, self.counters)
        self.market_poller = MarketPoller(config, self.aggregator.emit, self.counters)
        self.positioning_poller = PositioningPoller(config, self.aggregator.emit, self.counters)
        self.vwap_poller = VwapPoller(config, self.counters)
        self.adapters: list[StreamAdapter] = []
        self.runner: web.AppRunner | None = None
        self.stop_event: asyncio.Event | None = None
        self.running = False
        self.exit_code = 0

    @property
    def rings_path(self) -> Path:
        return self.data_dir / RINGS_FILE

    async def init(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        await self.store.init()

        restored = self.aggregator.rings.load(self.rings_path, int(time.time() * 1000))
        if restored:
            logger.info(f"Restored {restored} ring buckets from {self.rings_path}")

        for name, exchange_config in self.config.enabled_exchanges().items():
            try:
                profile = get_profile(name)
            except ValueError as e:
                logger.error(f"Skipping exchange {name}: {e}")
                continue
            self.aggregator.register_venue(profile.exchange, profile.venue)
            self.adapters.append(
                StreamAdapter(profile, exchange_config, self.aggregator.emit, self.config, self.counters)
            )

    def api_context(self) -> ApiContext:
        return ApiContext(
            config=self.config,
            aggregator=self.aggregator,
            engine=self.engine,
            store=self.store,
            backtest=self.backtest,
            counters=self.counters,
            adapters=self.adapters,
            vwap=self.vwap_poller,
        )

    async def dump_rings(self) -> None:
        try:
            count = await asyncio.to_thread(self.aggregator.rings.dump, self.rings_path)
            logger.debug(f"Saved {count} rings to {self.rings_path}")
        except OSError as e:
            logger.error(f"Failed to save ring snapshot: {e}")

    async def _persist_rings(self) -> None:
        interval = self.config.persistence.ring_snapshot_seconds
        while self.running:
            await asyncio.sleep(interval)
            await self.dump_rings()

    async def check_store(self) -> None:
        """Probe a degraded store; stop the service once it has been degraded too long."""
        if not self.store.degraded or await self.store.probe():
            return
        degraded_for = self.store.degraded_for_s()
        if degraded_for >= self.config.persistence.fatal_after_s:
            logger.critical(
                f"Prediction store degraded for {degraded_for:.0f}s, shutting down"
            )
            self.exit_code = 1
            self.request_stop()

    async def _watch_store(self) -> None:
        while self.running:
            await asyncio.sleep(STORE_PROBE_INTERVAL_S)
            await self.check_store()

    def request_stop(self) -> None:
        if self.stop_event is not None:
            self.stop_event.set()

    async def run(self) -> int:
        self.stop_event = asyncio.Event()
        await self.init()
        self.running = True

        tasks = [
            asyncio.create_task(self.aggregator.run()),
            asyncio.create_task(self._persist_rings()),
            asyncio.create_task(self._watch_store()),
        ]
        for adapter in self.adapters:
            await adapter.start()
        await self.market_poller.start()
        await self.positioning_poller.start()
        await self.vwap_poller.start()
        await self.scheduler.start()
        await self.evaluator.start()
        self.runner = await start_server(self.api_context())

        logger.info(f"Trader bias service started with {len(self.adapters)} adapters")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        await self.stop_event.wait()
        await self.shutdown(tasks)
        return self.exit_code

    async def shutdown(self, tasks: list[asyncio.Task]) -> None:
        self.running = False
        if self.runner is not None:
            await self.runner.cleanup()
        await self.scheduler.stop()
        await self.evaluator.stop()
        await self.vwap_poller.stop()
        await self.positioning_poller.stop()
        await self.market_poller.stop()
        await asyncio.gather(*(adapter.stop() for adapter in self.adapters))

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.dump_rings()
        await self.store.close()
        logger.info("Trader bias service stopped")


async def main() -> int:
    config = load_config(Path("config.yaml"))
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    service = TraderBiasService(config)
    return await service.run()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
