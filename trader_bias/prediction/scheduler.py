# trader_bias/prediction/scheduler.py
import asyncio
import logging
import time
from collections.abc import Callable

from trader_bias.bias.engine import HOUR_MS, BiasEngine
from trader_bias.config import Config
from trader_bias.errors import StoreDegraded
from trader_bias.metrics import Counters
from trader_bias.storage.database import PredictionStore
from trader_bias.storage.models import (
    EMITTED,
    NEUTRAL,
    PROJECTION_4HR,
    PROJECTION_12HR,
    PROJECTION_DAILY,
    SKIPPED,
    BiasReport,
    Prediction,
    ProjectionCycle,
)

logger = logging.getLogger(__name__)

MIN_EMIT_SCORE = 0.05

SKIP_INSUFFICIENT = "insufficient"
SKIP_WEAK = "weak_signal"
SKIP_NO_PRICE = "no_reference_price"
SKIP_ERROR = "error"


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


def next_boundary(now_ms: int, period_ms: int) -> int:
    """First multiple of period_ms strictly after now_ms (UTC aligned)."""
    return (now_ms // period_ms + 1) * period_ms


def skip_reason(report: BiasReport) -> str | None:
    if report.insufficient:
        return SKIP_INSUFFICIENT
    if abs(report.score) < MIN_EMIT_SCORE or report.direction == NEUTRAL:
        return SKIP_WEAK
    if report.reference_price is None or report.reference_price <= 0:
        return SKIP_NO_PRICE
    return None


class ProjectionScheduler:
    """Fires the 12h job at 00:00/12:00 UTC and the daily job at 00:00 UTC.

    The optional 4h job fires on every 4h UTC boundary. Each job scores every coin
    with windows ending at the boundary it fires on.
    """

    def __init__(
        self,
        engine: BiasEngine,
        store: PredictionStore,
        config: Config,
        counters: Counters | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.engine = engine
        self.store = store
        self.coins = config.coins
        self.counters = counters or Counters()
        self.clock = clock
        self.horizons = {
            PROJECTION_12HR: config.horizons.projection_hours * HOUR_MS,
            PROJECTION_DAILY: config.horizons.daily_hours * HOUR_MS,
        }
        if config.horizons.four_hour_predictions:
            self.horizons[PROJECTION_4HR] = config.horizons.four_hour_hours * HOUR_MS
        self.running = False
        self._task: asyncio.Task[None] | None = None

    def next_fire(self, now_ms: int) -> tuple[int, list[str]]:
        """Next boundary and the jobs due on it."""
        boundaries = {name: next_boundary(now_ms, period) for name, period in self.horizons.items()}
        at = min(boundaries.values())
        return at, [name for name, b in boundaries.items() if b == at]

    async def fire(self, projection_type: str, fired_at: int) -> list[Prediction]:
        horizon_ms = self.horizons[projection_type]
        emitted = []
        for coin in self.coins:
            try:
                report = self.engine.report(coin, projection_type, now_ms=fired_at)
                reason = skip_reason(report)
            except Exception as e:
                self.counters.inc("projection_errors")
                logger.exception(f"{coin} {projection_type} report failed: {e}")
                report, reason = None, SKIP_ERROR
            cycle = ProjectionCycle(
                coin=coin,
                projection_type=projection_type,
                fired_at=fired_at,
                status=SKIPPED if reason else EMITTED,
                reason=reason,
                score=report.score if report else None,
            )
            try:
                if report is not None and reason is None:
                    prediction = Prediction(
                        id=f"{coin}_{projection_type}_{fired_at}",
                        coin=coin,
                        projection_type=projection_type,
                        predicted_direction=report.direction,
                        strength=report.strength,
                        score=report.score,
                        emitted_at=fired_at,
                        horizon_ms=horizon_ms,
                        reference_price=report.reference_price,
                    )
                    if await self.store.insert_prediction(prediction):
                        emitted.append(prediction)
                        cycle.prediction_id = prediction.id
                        logger.info(
                            f"{coin} {projection_type} prediction {prediction.predicted_direction} "
                            f"{prediction.strength} score={prediction.score:+.3f} "
                            f"ref={prediction.reference_price}"
                        )
                else:
                    self.counters.inc("projections_skipped")
                    logger.info(f"{coin} {projection_type} projection skipped: {reason}")
                await self.store.record_cycle(cycle)
            except StoreDegraded as e:
                self.counters.inc("projections_dropped")
                logger.error(f"{coin} {projection_type} projection not stored: {e}")
        return emitted

    async def start(self) -> None:
        self.running = True
        self._task = asyncio.create_task(self._run())
        at, jobs = self.next_fire(self.clock())
        logger.info(f"ProjectionScheduler started, next {'/'.join(jobs)} run at {at}")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("ProjectionScheduler stopped")

    async def _run(self) -> None:
        while self.running:
            at, jobs = self.next_fire(self.clock())
            # sleep in short steps so wall-clock jumps are picked up
            remaining = at - self.clock()
            while remaining > 0:
                await asyncio.sleep(min(remaining / 1000, 60))
                remaining = at - self.clock()
            for projection_type in jobs:
                try:
                    await self.fire(projection_type, at)
                except Exception as e:
                    logger.error(f"{projection_type} projection run failed: {e}")
