# trader_bias/prediction/evaluator.py
import asyncio
import logging
from collections.abc import Callable

from trader_bias.aggregator.engine import Aggregator
from trader_bias.config import EvaluationConfig
from trader_bias.errors import StoreDegraded
from trader_bias.metrics import Counters
from trader_bias.prediction.scheduler import wall_clock_ms
from trader_bias.storage.database import PredictionStore
from trader_bias.storage.models import (
    BEARISH,
    BULLISH,
    CORRECT,
    INCORRECT,
    NEUTRAL_OUTCOME,
    Prediction,
)

logger = logging.getLogger(__name__)


def price_change_pct(reference: float, price: float) -> float:
    return 100 * (price - reference) / reference


def classify_outcome(
    direction: str,
    change_pct: float,
    move_threshold_pct: float = 0.1,
    neutral_band_pct: float = 0.5,
) -> str:
    if direction == BULLISH:
        if change_pct > move_threshold_pct:
            return CORRECT
        if change_pct < -move_threshold_pct:
            return INCORRECT
        return NEUTRAL_OUTCOME
    if direction == BEARISH:
        if change_pct < -move_threshold_pct:
            return CORRECT
        if change_pct > move_threshold_pct:
            return INCORRECT
        return NEUTRAL_OUTCOME
    # legacy NEUTRAL predictions
    return CORRECT if abs(change_pct) < neutral_band_pct else INCORRECT


class Evaluator:
    """Closes due predictions against the mark price at emitted_at + horizon."""

    def __init__(
        self,
        store: PredictionStore,
        aggregator: Aggregator,
        config: EvaluationConfig | None = None,
        counters: Counters | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.store = store
        self.aggregator = aggregator
        self.config = config or EvaluationConfig()
        self.counters = counters or Counters()
        self.clock = clock
        self.running = False
        self._task: asyncio.Task[None] | None = None

    async def evaluate(self, prediction: Prediction, now_ms: int) -> bool:
        """Evaluate one due prediction. Returns True when the record was closed."""
        price = self.aggregator.price_at(
            prediction.coin, prediction.due_at, self.config.price_tolerance_ms
        )
        if price is None:
            if now_ms < prediction.due_at + self.config.defer_ms:
                self.counters.inc("evaluations_deferred")
                logger.debug(f"No mark price for {prediction.id} yet, deferring")
                return False
            logger.warning(f"No mark price for {prediction.id} after defer window, marking neutral")
            return await self.store.record_evaluation(prediction.id, now_ms, None, NEUTRAL_OUTCOME)

        change = price_change_pct(prediction.reference_price, price)
        outcome = classify_outcome(
            prediction.predicted_direction,
            change,
            self.config.move_threshold_pct,
            self.config.neutral_band_pct,
        )
        closed = await self.store.record_evaluation(prediction.id, now_ms, change, outcome)
        if closed:
            logger.info(
                f"Evaluated {prediction.id}: {prediction.predicted_direction} "
                f"{change:+.2f}% -> {outcome}"
            )
        return closed

    async def evaluate_once(self, now_ms: int | None = None) -> int:
        now_ms = now_ms if now_ms is not None else self.clock()
        closed = 0
        for prediction in await self.store.pending_due(now_ms):
            if await self.evaluate(prediction, now_ms):
                closed += 1
        return closed

    async def start(self) -> None:
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Evaluator started, every {self.config.interval_seconds}s")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Evaluator stopped")

    async def _run(self) -> None:
        while self.running:
            try:
                await self.evaluate_once()
            except StoreDegraded as e:
                logger.warning(f"Evaluation postponed: {e}")
            except Exception as e:
                logger.error(f"Evaluation run failed: {e}")
            await asyncio.sleep(self.config.interval_seconds)
